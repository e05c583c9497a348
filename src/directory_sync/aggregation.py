"""
Star model aggregation.

Groups the staged input rows of every collection by (sex, age range, material,
diagnosis), counts donors and samples, suppresses groups with too few donors and
caps the combined output.
"""

from __future__ import annotations

import logging
import math
import typing
from datetime import date

import pandas as pd

from .fact_table import FactRecord, FactTable
from .ids import fact_id
from .input_dataset import InputDataset

logger = logging.getLogger(__name__)

UNKNOWN_AGE_RANGE = "Unknown"

# (label, inclusive lower bound in years), ascending
AGE_RANGES = [
    ("Newborn", 0),
    ("Infant", 1),
    ("Child", 2),
    ("Adolescent", 10),
    ("Young Adult", 18),
    ("Adult", 25),
    ("Middle-aged", 45),
    ("Aged (65-79 years)", 65),
    ("Aged (>80 years)", 80),
]

GROUP_KEYS = ["sex", "age_range", "sample_material", "diagnosis"]


def age_range(age: typing.Optional[str]) -> str:
    """
    Bucket an age in years into its star model label.

    Empty, unparsable and negative ages are 'Unknown'.
    """
    if age is None:
        return UNKNOWN_AGE_RANGE
    try:
        years = float(str(age).strip())
    except ValueError:
        return UNKNOWN_AGE_RANGE
    if math.isnan(years) or years < 0:
        return UNKNOWN_AGE_RANGE
    label = UNKNOWN_AGE_RANGE
    for name, lower_bound in AGE_RANGES:
        if years >= lower_bound:
            label = name
    return label


def _none_if_nan(value):
    # groupby(dropna=False) hands missing keys back as NaN
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return value


def _collection_facts(
    dataset: InputDataset,
    collection_id: str,
    today: str,
) -> list[FactRecord]:
    frame = dataset.to_frame(collection_id)
    if frame.empty:
        return []
    frame["age_range"] = frame["age_at_diagnosis"].map(age_range)

    grouped = (
        frame.groupby(GROUP_KEYS, sort=False, dropna=False)
        .agg(donor_count=("subject_id", "nunique"), sample_count=("subject_id", "size"))
        .reset_index()
    )
    suppressed = grouped[grouped["donor_count"] < dataset.min_donors]
    if len(suppressed):
        logger.debug(
            f"{collection_id}: suppressed {len(suppressed)} of {len(grouped)} groups "
            f"with fewer than {dataset.min_donors} donors"
        )
    surviving = grouped[grouped["donor_count"] >= dataset.min_donors]

    records = []
    for sequence, row in enumerate(surviving.itertuples(index=False), start=1):
        records.append(
            FactRecord(
                id=fact_id(collection_id, sequence),
                collection_id=collection_id,
                sex=_none_if_nan(row.sex),
                age_range=row.age_range,
                diagnosis=_none_if_nan(row.diagnosis),
                sample_material=_none_if_nan(row.sample_material),
                donor_count=int(row.donor_count),
                sample_count=int(row.sample_count),
                last_update=today,
            )
        )
    return records


def create_fact_tables(dataset: InputDataset, max_facts: int = -1) -> FactTable:
    """
    Build the star model fact table for every collection in ``dataset``.

    Parameters
    ----------
    dataset : InputDataset
        Normalized rows, with the donor threshold used for suppression.
    max_facts : int, optional
        Upper bound on the number of facts across all collections; a negative
        value (the default) means no cap. Suppression always runs first.

    Returns
    -------
    FactTable
        Facts in collection order, then in order of first appearance of each group.
    """
    today = date.today().isoformat()
    records: list[FactRecord] = []
    for collection_id in dataset.collection_ids:
        collection_records = _collection_facts(dataset, collection_id, today)
        logger.info(f"{collection_id}: {len(collection_records)} facts")
        records.extend(collection_records)

    if max_facts >= 0 and len(records) > max_facts:
        logger.info(f"Truncating fact table from {len(records)} to {max_facts} facts")
        records = records[:max_facts]

    return FactTable(records)
