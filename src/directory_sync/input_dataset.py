"""
Input dataset domain model.

Defines the InputRow dataclass holding one normalized specimen/diagnosis
observation, and the InputDataset that stages those rows per collection
before aggregation.
"""

import dataclasses
import logging
import typing
from dataclasses import dataclass

import pandas as pd

from .converter import convert_diagnosis, convert_material, convert_sex

logger = logging.getLogger(__name__)

ROW_COLUMNS = [
    "collection_id",
    "subject_id",
    "sex",
    "sample_material",
    "age_at_diagnosis",
    "diagnosis",
]

_CONVERTERS = {
    "sex": convert_sex,
    "sample_material": convert_material,
    "diagnosis": convert_diagnosis,
}

# once set, these never go back to None
_NORMALIZED_FIELDS = {"sex", "sample_material", "age_at_diagnosis", "diagnosis"}


@dataclass
class InputRow:
    """
    One specimen observation, normalized into registry vocabulary.

    Attributes:
        collection_id: Registry collection the specimen belongs to.
        subject_id: Donor (patient) identifier, used to count distinct donors.
        sex: Upper-cased sex term (e.g. 'FEMALE').
        sample_material: Registry material type (e.g. 'SERUM') or None.
        age_at_diagnosis: Age in years as a string; empty if unknown.
        diagnosis: MIRIAM disease reference (e.g. 'urn:miriam:icd:C75') or None.
    """

    collection_id: str
    subject_id: str
    sex: str
    sample_material: typing.Optional[str] = None
    age_at_diagnosis: typing.Optional[str] = ""
    diagnosis: typing.Optional[str] = None

    def __setattr__(self, name, value):
        if name in _CONVERTERS and value is not None:
            value = _CONVERTERS[name](value)
        if name in _NORMALIZED_FIELDS and value is None and name in self.__dict__:
            return
        super().__setattr__(name, value)

    def __post_init__(self):
        if not self.collection_id:
            raise ValueError("collection_id must be a non-empty string")
        if not self.subject_id:
            raise ValueError("subject_id must be a non-empty string")
        if self.sex is None:
            raise ValueError("sex is required")
        if self.age_at_diagnosis is None:
            super().__setattr__("age_at_diagnosis", "")

    def with_diagnosis(self, diagnosis: typing.Optional[str]) -> "InputRow":
        return dataclasses.replace(self, diagnosis=diagnosis)


class InputDataset:
    """
    Rows staged for aggregation, grouped by collection in insertion order.

    Built from scratch on every sync pass and discarded after the fact table
    has been computed.
    """

    def __init__(self, min_donors: int = 10):
        if min_donors < 0:
            raise ValueError(f"min_donors must be >= 0, got {min_donors}")
        self.min_donors = min_donors
        self._rows: dict[str, list[InputRow]] = {}

    def add_row(self, row: InputRow) -> None:
        self._rows.setdefault(row.collection_id, []).append(row)

    @property
    def collection_ids(self) -> list[str]:
        return list(self._rows)

    def rows(self, collection_id: str) -> list[InputRow]:
        return list(self._rows.get(collection_id, []))

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in self._rows.values())

    def apply_diagnosis_corrections(self, corrections: dict[str, typing.Optional[str]]) -> None:
        """
        Replace each row's diagnosis with its corrected value.

        A correction to None clears the diagnosis, so the row falls into the
        "no diagnosis" group instead of carrying an unrecognized code.
        """
        corrected = 0
        for collection_id, rows in self._rows.items():
            for index, row in enumerate(rows):
                if row.diagnosis is None or row.diagnosis not in corrections:
                    continue
                replacement = corrections[row.diagnosis]
                if replacement != row.diagnosis:
                    rows[index] = row.with_diagnosis(replacement)
                    corrected += 1
        logger.debug(f"apply_diagnosis_corrections: corrected {corrected} rows")

    def to_frame(self, collection_id: str) -> pd.DataFrame:
        records = [dataclasses.asdict(row) for row in self._rows.get(collection_id, [])]
        return pd.DataFrame.from_records(records, columns=ROW_COLUMNS)
