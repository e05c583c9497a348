"""
Diagnosis code correction against the registry's disease vocabulary.

The source store carries ICD-10 codes of varying quality. Before they reach the
registry, each code is checked; an unknown code is first cleaned up, then cut back
to its three-character category, and dropped (mapped to None) if neither is
recognized.
"""

import logging
import typing

from .converter import (
    MIRIAM_PREFIX,
    UNKNOWN_ICD10,
    convert_diagnosis,
    normalize_icd10,
    strip_miriam_prefix,
)
from .registry import RegistryClient

logger = logging.getLogger(__name__)


def build_diagnosis_map(raw_codes: typing.Iterable[typing.Optional[str]]) -> dict[str, typing.Optional[str]]:
    """Identity map over the MIRIAM forms of ``raw_codes``; invalid codes are left out."""
    diagnosis_map: dict[str, typing.Optional[str]] = {}
    for raw in raw_codes:
        converted = convert_diagnosis(raw)
        if converted is not None:
            diagnosis_map[converted] = converted
    return diagnosis_map


class DiagnosisCorrector:
    """Corrects diagnosis maps using ``registry.is_valid_diagnosis_code``."""

    def __init__(self, registry: RegistryClient):
        self.registry = registry
        # cached validity per code, one registry lookup each
        self._validity: dict[str, bool] = {}

    def _is_valid(self, code: str) -> bool:
        if code not in self._validity:
            self._validity[code] = self.registry.is_valid_diagnosis_code(code)
        return self._validity[code]

    def _candidates(self, code: str) -> list[str]:
        candidates = []
        normalized = normalize_icd10(code)
        if normalized != UNKNOWN_ICD10 and normalized != code:
            candidates.append(normalized)
        if len(code) > 3:
            candidates.append(code[:3])
        return list(dict.fromkeys(candidates))

    def correct_code(self, diagnosis: str) -> typing.Optional[str]:
        """Return ``diagnosis`` if valid, a corrected code, or None."""
        prefix = MIRIAM_PREFIX if diagnosis.startswith(MIRIAM_PREFIX) else ""
        if self._is_valid(diagnosis):
            return diagnosis
        for candidate in self._candidates(strip_miriam_prefix(diagnosis)):
            if self._is_valid(prefix + candidate):
                return prefix + candidate
        return None

    def correct(self, diagnosis_map: dict[str, typing.Optional[str]]) -> dict[str, typing.Optional[str]]:
        """
        Correct every entry of ``diagnosis_map`` in place and return it.

        In mock mode the registry is not consulted and the map is returned as is.
        """
        if self.registry.mock:
            return diagnosis_map

        invalid = corrected = discarded = null = 0
        for diagnosis in list(diagnosis_map):
            if diagnosis is None:
                null += 1
                continue
            replacement = self.correct_code(diagnosis)
            if replacement == diagnosis:
                continue
            invalid += 1
            if replacement is None:
                discarded += 1
                logger.debug(f"Discarding unrecognized diagnosis {diagnosis!r}")
            else:
                corrected += 1
                logger.debug(f"Correcting diagnosis {diagnosis!r} to {replacement!r}")
            diagnosis_map[diagnosis] = replacement

        logger.debug(
            f"Diagnosis correction: total={len(diagnosis_map)} null={null} "
            f"invalid={invalid} corrected={corrected} discarded={discarded}"
        )
        return diagnosis_map
