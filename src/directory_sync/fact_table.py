"""
Star model fact records.

A FactRecord is one aggregate row (collection, sex, age range, disease, material)
with its donor and sample counts. A FactTable is the ordered output of one
aggregation run across one or more collections.
"""

from __future__ import annotations

import logging
import typing
from dataclasses import dataclass

import pandas as pd

from .ids import country_code_of

logger = logging.getLogger(__name__)

FACT_COLUMNS = [
    "id",
    "sex",
    "disease",
    "age_range",
    "sample_type",
    "number_of_donors",
    "number_of_samples",
    "last_update",
    "collection",
    "national_node",
]

# a star model sample count below this share of the source count is suspicious
SAMPLE_COUNT_TOLERANCE = 0.8


@dataclass
class FactRecord:
    """
    One aggregated row of the star model.

    Attributes:
        id: Synthetic fact id derived from the collection id and a sequence number.
        collection_id: Registry collection the fact describes.
        sex: Registry sex term.
        age_range: Age bucket label (e.g. 'Adult').
        diagnosis: MIRIAM disease reference or None.
        sample_material: Registry material type or None.
        donor_count: Distinct subjects in the group.
        sample_count: Rows (specimens) in the group.
        last_update: ISO date the fact was computed.
        national_node: Country code of the submitting node, if already known.
    """

    id: str
    collection_id: str
    sex: str
    age_range: str
    diagnosis: typing.Optional[str]
    sample_material: typing.Optional[str]
    donor_count: int
    sample_count: int
    last_update: str
    national_node: typing.Optional[str] = None

    def __post_init__(self):
        if self.donor_count > self.sample_count:
            raise ValueError(
                f"Fact {self.id!r}: donor_count {self.donor_count} exceeds sample_count {self.sample_count}"
            )

    def to_registry_dict(self) -> dict[str, typing.Any]:
        """Registry wire form of this fact; unset optional attributes are left out."""
        entity = {
            "id": self.id,
            "collection": self.collection_id,
            "sex": self.sex,
            "age_range": self.age_range,
            "number_of_donors": self.donor_count,
            "number_of_samples": self.sample_count,
            "last_update": self.last_update,
        }
        if self.diagnosis is not None:
            entity["disease"] = self.diagnosis
        if self.sample_material is not None:
            entity["sample_type"] = self.sample_material
        if self.national_node is not None:
            entity["national_node"] = self.national_node
        return entity


class FactTable:
    """Ordered fact records, plus helpers shared by the registry clients."""

    def __init__(self, records: typing.Optional[typing.Iterable[FactRecord]] = None):
        self.records: list[FactRecord] = list(records or [])

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    @property
    def country_code(self) -> typing.Optional[str]:
        """Country code parsed from the first record's collection id."""
        if not self.records:
            return None
        return country_code_of(self.records[0].collection_id)

    @property
    def collection_ids(self) -> list[str]:
        return list(dict.fromkeys(record.collection_id for record in self.records))

    def blocks(self, size: int) -> list[list[FactRecord]]:
        if size <= 0:
            raise ValueError(f"block size must be positive, got {size}")
        return [self.records[i:i + size] for i in range(0, len(self.records), size)]

    @staticmethod
    def inject_national_node(block: list[FactRecord], country_code: typing.Optional[str]) -> None:
        # only fill gaps, an existing value wins
        if country_code is None:
            return
        for record in block:
            if record.national_node is None:
                record.national_node = country_code

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame.from_records(
            [record.to_registry_dict() for record in self.records],
            columns=FACT_COLUMNS,
        )

    def sanity_check(self, source_sample_count: int, source_materials: typing.Iterable[str]) -> list[str]:
        """
        Compare the star model against the source it was built from.

        Returns the warnings found (they are also logged). Suppression makes some
        loss expected, so only large gaps are reported.
        """
        warnings: list[str] = []
        star_sample_count = sum(record.sample_count for record in self.records)
        if source_sample_count > 0 and star_sample_count < SAMPLE_COUNT_TOLERANCE * source_sample_count:
            warnings.append(
                f"star model holds {star_sample_count} samples, source has {source_sample_count}"
            )
        source_material_set = {m for m in source_materials if m}
        star_material_set = {r.sample_material for r in self.records if r.sample_material}
        if len(star_material_set) > len(source_material_set):
            warnings.append(
                f"star model has {len(star_material_set)} material types, source has {len(source_material_set)}"
            )
        missing_disease = sum(1 for record in self.records if record.diagnosis is None)
        if missing_disease:
            warnings.append(f"{missing_disease} facts have no disease")
        for warning in warnings:
            logger.warning(f"Fact table sanity check: {warning}")
        return warnings
