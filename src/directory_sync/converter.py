"""
Vocabulary conversion between the local source store and the registry.

Each converter takes a raw source value and returns the registry's controlled
vocabulary term. Apart from convert_sex, a None input yields None, and values that
cannot be mapped are logged and resolved to None rather than raised.
"""

import logging
import re
import typing

logger = logging.getLogger(__name__)

# --- Constants --------------------------------------------------------------

MIRIAM_PREFIX = "urn:miriam:icd:"

MATERIAL_RENAME_MAP = {
    "TISSUE_FORMALIN": "TISSUE_PARAFFIN_EMBEDDED",
    "TISSUE":          "TISSUE_FROZEN",
    "CF_DNA":          "CDNA",
    "BLOOD_SERUM":     "SERUM",
    "BLOOD_PLASMA":    "SERUM",
    "STOOL_FAECES":    "FECES",
    # star model aliases
    "FFPE":             "TISSUE_PARAFFIN_EMBEDDED",
    "CRYOPRESERVATION": "TISSUE_FROZEN",
}

MISC_MATERIALS = {
    "DERIVATIVE",
    "CSF_LIQUOR",
    "LIQUID",
    "ASCITES",
    "BONE_MARROW",
}

MISC_MATERIAL_FRAGMENTS = ("OTHER", "PAXGENE")

STORAGE_TEMPERATURE_MAP = {
    "temperatureGN": "temperatureOther",
}

# WHO ICD-10: a letter, two digits, optionally one or two decimals.
ICD10_PATTERN = re.compile(r"^[A-Z]\d{2}(?:\.\d{1,2})?$")

# "Ill-defined and unknown causes", used when a code cannot be salvaged.
UNKNOWN_ICD10 = "R69"


def convert_sex(sex: str) -> str:
    """Upper-case a sex term. None is a caller error."""
    if sex is None:
        raise TypeError("convert_sex() requires a sex value, got None")
    return sex.upper()


def convert_material(material: typing.Optional[str]) -> typing.Optional[str]:
    """
    Map a source sample material onto the registry's material vocabulary.

    Hyphens become underscores, the value is upper-cased, and a trailing
    ``_VITAL`` is dropped before the rename table and the OTHER bucket apply.
    """
    if material is None:
        return None
    material = material.replace("-", "_").upper()
    if material.endswith("_VITAL"):
        material = material[: -len("_VITAL")]
    if material in MATERIAL_RENAME_MAP:
        return MATERIAL_RENAME_MAP[material]
    if material in MISC_MATERIALS or any(f in material for f in MISC_MATERIAL_FRAGMENTS):
        return "OTHER"
    return material


def convert_storage_temperature(temperature: typing.Optional[str]) -> typing.Optional[str]:
    if temperature is None:
        return None
    return STORAGE_TEMPERATURE_MAP.get(temperature, temperature)


def convert_diagnosis(diagnosis: typing.Optional[str]) -> typing.Optional[str]:
    """
    Turn a bare ICD-10 code into the registry's MIRIAM disease reference.

    ``C75`` and ``E23.1`` gain the ``urn:miriam:icd:`` prefix, already-prefixed
    values pass through, and anything else is logged and dropped.
    """
    if diagnosis is None:
        return None
    if diagnosis.startswith(MIRIAM_PREFIX):
        return diagnosis
    if len(diagnosis) == 3 or (len(diagnosis) == 5 and diagnosis[3] == "."):
        return MIRIAM_PREFIX + diagnosis
    logger.warning(f"convert_diagnosis: invalid diagnosis code {diagnosis!r}, dropping it")
    return None


def strip_miriam_prefix(diagnosis: str) -> str:
    if diagnosis.startswith(MIRIAM_PREFIX):
        return diagnosis[len(MIRIAM_PREFIX):]
    return diagnosis


def is_valid_icd10(code: typing.Optional[str]) -> bool:
    return code is not None and ICD10_PATTERN.match(code) is not None


def normalize_icd10(raw: typing.Optional[str]) -> str:
    """
    Best-effort cleanup of a free-text ICD-10 (WHO) code.

    Separators such as ``,`` and ``-`` are read as the decimal point, anything
    before the first letter and any illegal character is discarded, and at most
    two decimals are kept. Returns ``R69`` when no code can be recovered.

    >>> normalize_icd10(" c50,91x ")
    'C50.91'
    """
    if raw is None:
        return UNKNOWN_ICD10
    code = raw.strip().upper().replace(",", ".").replace("-", ".")
    code = re.sub(r"[^A-Z0-9.]", "", code)
    first_letter = re.search(r"[A-Z]", code)
    if first_letter is None:
        return UNKNOWN_ICD10
    match = re.match(r"([A-Z])(\d{2})(?:\.?(\d{1,2}))?", code[first_letter.start():])
    if match is None:
        return UNKNOWN_ICD10
    letter, digits, decimals = match.groups()
    normalized = f"{letter}{digits}.{decimals}" if decimals else f"{letter}{digits}"
    return normalized if is_valid_icd10(normalized) else UNKNOWN_ICD10
