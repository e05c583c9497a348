"""
A registry stand-in that writes what would be sent to local files.

Useful for dry runs and for checking the star model before a real sync: facts go
to ``DirectoryFactTables`` and collections to ``DirectoryCollections``, as
``;``-separated CSV or as Excel workbooks.
"""

from __future__ import annotations

import logging
import pathlib
import typing
from datetime import datetime

import pandas as pd

from .collection import Biobank, Collections
from .fact_table import FACT_COLUMNS, FactRecord
from .ids import country_code_of
from .registry import RegistryClient

logger = logging.getLogger(__name__)

FACTS_BASENAME = "DirectoryFactTables"
COLLECTIONS_BASENAME = "DirectoryCollections"
CSV_SEPARATOR = ";"
SUPPORTED_FORMATS = ("csv", "xlsx")
FACT_ID_PAGE_SIZE = 1000

COLLECTION_COLUMNS = [
    "id",
    "country",
    "national_node",
    "biobank",
    "biobank_label",
    "type",
    "data_categories",
    "order_of_magnitude",
    "size",
    "timestamp",
    "number_of_donors",
    "order_of_magnitude_donors",
    "sex",
    "diagnosis_available",
    "age_low",
    "age_high",
    "materials",
    "storage_temperatures",
]

# attributes the registry would otherwise supply
DEFAULT_COLLECTION_TYPE = ["SAMPLE"]
DEFAULT_DATA_CATEGORIES = ["BIOLOGICAL_SAMPLES"]


def _flatten(value):
    if isinstance(value, list):
        return ",".join(str(v) for v in value)
    return value


class FileRegistryClient(RegistryClient):
    """
    Writes facts and collections into ``output_directory`` instead of a registry.

    Facts written by this client are listed and deleted like stored registry
    facts, so a repeated update replaces them. Other reads answer as an empty
    registry would: no known collections, and every diagnosis code accepted.
    """

    def __init__(self, output_directory: typing.Union[str, pathlib.Path], file_format: str = "csv"):
        super().__init__(mock=False)
        if file_format not in SUPPORTED_FORMATS:
            raise ValueError(f"file_format must be one of {SUPPORTED_FORMATS}, got {file_format!r}")
        self.output_directory = pathlib.Path(output_directory)
        self.file_format = file_format
        self.fact_frame = pd.DataFrame(columns=FACT_COLUMNS)
        self.collection_frame = pd.DataFrame(columns=COLLECTION_COLUMNS)

    def path_for(self, basename: str) -> pathlib.Path:
        return self.output_directory / f"{basename}.{self.file_format}"

    def _write(self, frame: pd.DataFrame, basename: str) -> bool:
        path = self.path_for(basename)
        try:
            self.output_directory.mkdir(parents=True, exist_ok=True)
            if self.file_format == "xlsx":
                frame.to_excel(path, index=False, engine="openpyxl")
            else:
                frame.to_csv(path, sep=CSV_SEPARATOR, index=False)
        except OSError as e:
            logger.warning(f"Could not write {path}: {e}")
            return False
        logger.info(f"Wrote {len(frame)} rows to {path}")
        return True

    def login(self) -> bool:
        return True

    def fetch_biobank(self, biobank_id: str) -> typing.Optional[Biobank]:
        logger.info(f"fetch_biobank: file output has no biobank {biobank_id!r}")
        return None

    def fetch_collections(self, country_code, collection_ids) -> typing.Optional[Collections]:
        return Collections()

    def submit_collections(self, collections: Collections) -> bool:
        timestamp = datetime.now().isoformat(timespec="seconds")
        rows = []
        for collection in collections:
            entity = collection.to_registry_dict()
            country = entity.get("country") or country_code_of(collection.id)
            entity.setdefault("country", country)
            entity.setdefault("national_node", country)
            entity.setdefault("timestamp", timestamp)
            entity.setdefault("biobank_label", entity.get("biobank"))
            entity.setdefault("type", DEFAULT_COLLECTION_TYPE)
            entity.setdefault("data_categories", DEFAULT_DATA_CATEGORIES)
            rows.append({column: _flatten(entity.get(column)) for column in COLLECTION_COLUMNS})
        self.collection_frame = pd.DataFrame.from_records(rows, columns=COLLECTION_COLUMNS)
        return self._write(self.collection_frame, COLLECTIONS_BASENAME)

    def submit_fact_block(self, country_code, records: list[FactRecord]) -> bool:
        block = pd.DataFrame.from_records(
            [record.to_registry_dict() for record in records], columns=FACT_COLUMNS
        )
        frames = [frame for frame in (self.fact_frame, block) if not frame.empty]
        self.fact_frame = pd.concat(frames, ignore_index=True) if frames else block
        return self._write(self.fact_frame, FACTS_BASENAME)

    def next_fact_id_page(self, country_code, collection_id: str) -> typing.Optional[list[str]]:
        stored = self.fact_frame.loc[self.fact_frame["collection"] == collection_id, "id"]
        return stored.head(FACT_ID_PAGE_SIZE).tolist()

    def delete_facts(self, country_code, fact_ids: list[str]) -> bool:
        self.fact_frame = self.fact_frame.loc[~self.fact_frame["id"].isin(fact_ids)].reset_index(drop=True)
        return self._write(self.fact_frame, FACTS_BASENAME)

    def is_valid_diagnosis_code(self, code: str) -> bool:
        return True
