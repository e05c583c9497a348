"""
Source store access: specimens, patients and biobanks held locally.

SourceClient is the contract the sync pass reads through. populate_input_dataset
and summarize_collections turn what it returns into the star model input and the
collection summaries. TabularSource implements the contract over a CSV file or
Excel workbook of specimens.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import pathlib
import typing
from dataclasses import dataclass, field
from datetime import date

import pandas as pd

from .collection import Biobank, Collection, Collections
from .converter import convert_diagnosis, strip_miriam_prefix
from .ids import is_valid_collection_identifier
from .input_dataset import InputDataset, InputRow

logger = logging.getLogger(__name__)

# key for specimens that name no collection
DEFAULT_COLLECTION_KEY = "DEFAULT"

MAX_NULL_AGE_WARNINGS = 5


@dataclass
class Patient:
    """
    A specimen donor.

    Attributes:
        id: Source patient identifier.
        sex: Administrative gender as recorded at the source (e.g. 'female').
        birth_date: Date of birth, if known.
        condition_codes: ICD-10 codes of the patient's recorded conditions.
    """

    id: str
    sex: typing.Optional[str] = None
    birth_date: typing.Optional[date] = None
    condition_codes: list[str] = field(default_factory=list)


@dataclass
class Specimen:
    """
    A stored sample.

    Attributes:
        id: Source specimen identifier.
        patient_id: Donor reference; None if the specimen cannot be attributed.
        collection_id: Registry collection, None for the default collection.
        material: Source material type (e.g. 'blood-serum').
        storage_temperature: Source storage temperature term.
        collection_date: Date the sample was taken.
        diagnoses: ICD-10 codes attached to the specimen itself.
    """

    id: str
    patient_id: typing.Optional[str] = None
    collection_id: typing.Optional[str] = None
    material: typing.Optional[str] = None
    storage_temperature: typing.Optional[str] = None
    collection_date: typing.Optional[date] = None
    diagnoses: list[str] = field(default_factory=list)


class SourceClient(metaclass=abc.ABCMeta):
    """Read (and, for biobanks, write back) access to the local source store."""

    @abc.abstractmethod
    def init_resources(self) -> bool:
        pass

    @abc.abstractmethod
    def fetch_specimens_by_collection(
        self, default_collection_id: typing.Optional[str]
    ) -> typing.Optional[dict[str, list[Specimen]]]:
        """Specimens grouped by collection id; None if the store cannot be read."""
        pass

    @abc.abstractmethod
    def extract_patient_from_specimen(self, specimen: Specimen) -> typing.Optional[Patient]:
        pass

    @abc.abstractmethod
    def extract_condition_codes_from_patient(self, patient: Patient) -> list[str]:
        pass

    @abc.abstractmethod
    def extract_diagnoses_from_specimen(self, specimen: Specimen) -> list[str]:
        pass

    @abc.abstractmethod
    def find_specimens_of_patient(self, patient: Patient) -> list[Specimen]:
        pass

    @abc.abstractmethod
    def list_biobanks(self) -> typing.Optional[list[Biobank]]:
        pass

    @abc.abstractmethod
    def update_biobank(self, biobank: Biobank) -> bool:
        pass


def resolve_default_collection(
    specimens_by_collection: dict[str, list[Specimen]],
    default_collection_id: typing.Optional[str],
) -> dict[str, list[Specimen]]:
    """
    Move specimens filed under the DEFAULT key to ``default_collection_id``.

    Without a valid default collection id those specimens are dropped.
    """
    default_specimens = specimens_by_collection.pop(DEFAULT_COLLECTION_KEY, [])
    if not default_specimens:
        return specimens_by_collection
    if not is_valid_collection_identifier(default_collection_id):
        logger.warning(
            f"{len(default_specimens)} specimens have no collection and no valid default "
            f"collection id is configured ({default_collection_id!r}); skipping them"
        )
        return specimens_by_collection
    specimens_by_collection.setdefault(default_collection_id, []).extend(default_specimens)
    return specimens_by_collection


def _years_between(start: date, end: date) -> int:
    return end.year - start.year - ((end.month, end.day) < (start.month, start.day))


class SpecimenReader:
    """
    Resolves specimens into flat per-specimen records.

    Keeps the caches that make this affordable across a pass: each patient is
    resolved once, and so is each patient's earliest collection date.
    """

    def __init__(self, source: SourceClient):
        self.source = source
        self.null_age_count = 0
        self._earliest_collection_dates: dict[str, typing.Optional[date]] = {}

    def _earliest_collection_date(self, patient: Patient) -> typing.Optional[date]:
        if patient.id not in self._earliest_collection_dates:
            dates = [s.collection_date for s in self.source.find_specimens_of_patient(patient) if s.collection_date]
            self._earliest_collection_dates[patient.id] = min(dates) if dates else None
        return self._earliest_collection_dates[patient.id]

    def age_at_collection(self, patient: Patient) -> typing.Optional[int]:
        """Age in whole years at the patient's earliest specimen collection."""
        if patient.birth_date is None:
            self.null_age_count += 1
            if self.null_age_count <= MAX_NULL_AGE_WARNINGS:
                logger.warning(f"Patient {patient.id!r} has no birth date, age unknown")
            return None
        collected = self._earliest_collection_date(patient)
        if collected is None:
            logger.warning(f"Patient {patient.id!r} has no specimen collection date, age unknown")
            return None
        age = _years_between(patient.birth_date, collected)
        if age < 0:
            logger.warning(f"Patient {patient.id!r} was sampled before birth, age unknown")
            return None
        return age

    def records(self, specimens: list[Specimen]) -> pd.DataFrame:
        """One row per resolvable specimen; specimens without a patient are skipped."""
        rows = []
        for specimen in specimens:
            patient = self.source.extract_patient_from_specimen(specimen)
            if patient is None:
                logger.warning(f"Specimen {specimen.id!r} has no patient, skipping it")
                continue
            diagnoses = list(dict.fromkeys(
                self.source.extract_condition_codes_from_patient(patient)
                + self.source.extract_diagnoses_from_specimen(specimen)
            ))
            rows.append({
                "specimen_id": specimen.id,
                "patient_id": patient.id,
                "sex": patient.sex or "unknown",
                "age": self.age_at_collection(patient),
                "material": specimen.material,
                "storage_temperature": specimen.storage_temperature,
                "diagnoses": diagnoses,
            })
        return pd.DataFrame.from_records(
            rows,
            columns=["specimen_id", "patient_id", "sex", "age", "material", "storage_temperature", "diagnoses"],
        )


def _fetch(source: SourceClient, default_collection_id) -> typing.Optional[dict[str, list[Specimen]]]:
    specimens_by_collection = source.fetch_specimens_by_collection(default_collection_id)
    if specimens_by_collection is None:
        logger.error("Could not fetch specimens from the source store")
        return None
    for collection_id in [c for c in specimens_by_collection if not is_valid_collection_identifier(c)]:
        skipped = specimens_by_collection.pop(collection_id)
        logger.warning(f"{collection_id!r} is not a valid collection id; skipping its {len(skipped)} specimens")
    if not specimens_by_collection:
        logger.warning("The source store holds no specimens")
    return specimens_by_collection


def populate_input_dataset(
    source: SourceClient,
    default_collection_id: typing.Optional[str] = None,
    min_donors: int = 10,
) -> typing.Optional[InputDataset]:
    """
    Build the star model input from the source store.

    Each specimen contributes one row per distinct diagnosis of its patient and
    itself, or a single row without diagnosis if there is none.
    """
    specimens_by_collection = _fetch(source, default_collection_id)
    if specimens_by_collection is None:
        return None
    reader = SpecimenReader(source)
    dataset = InputDataset(min_donors=min_donors)
    for collection_id, specimens in specimens_by_collection.items():
        frame = reader.records(specimens)
        logger.info(f"{collection_id}: {len(frame)} of {len(specimens)} specimens resolved")
        for record in frame.itertuples(index=False):
            age = "" if record.age is None or pd.isna(record.age) else str(int(record.age))
            row = InputRow(
                collection_id=collection_id,
                subject_id=record.patient_id,
                sex=record.sex,
                sample_material=record.material,
                age_at_diagnosis=age,
            )
            for diagnosis in record.diagnoses or [None]:
                dataset.add_row(row.with_diagnosis(diagnosis))
    if reader.null_age_count > MAX_NULL_AGE_WARNINGS:
        logger.warning(f"{reader.null_age_count} patients in total have no birth date")
    return dataset


def collect_diagnoses(source: SourceClient, default_collection_id: typing.Optional[str] = None) -> typing.Optional[list[str]]:
    """Distinct raw diagnosis codes over all patients and specimens."""
    specimens_by_collection = _fetch(source, default_collection_id)
    if specimens_by_collection is None:
        return None
    codes: dict[str, None] = {}
    for specimens in specimens_by_collection.values():
        for specimen in specimens:
            patient = source.extract_patient_from_specimen(specimen)
            if patient is not None:
                codes.update(dict.fromkeys(source.extract_condition_codes_from_patient(patient)))
            codes.update(dict.fromkeys(source.extract_diagnoses_from_specimen(specimen)))
    return list(codes)


def summarize_collections(
    source: SourceClient,
    default_collection_id: typing.Optional[str] = None,
) -> typing.Optional[Collections]:
    """Collection-level statistics (size, donors, ages, vocabularies) from the source store."""
    specimens_by_collection = _fetch(source, default_collection_id)
    if specimens_by_collection is None:
        return None
    reader = SpecimenReader(source)
    collections = Collections()
    for collection_id, specimens in specimens_by_collection.items():
        frame = reader.records(specimens)
        if frame.empty:
            continue
        ages = frame["age"].dropna()
        diagnoses = [
            strip_miriam_prefix(converted)
            for converted in (convert_diagnosis(d) for d in frame["diagnoses"].explode().dropna())
            if converted is not None
        ]
        collections.add(Collection(
            id=collection_id,
            size=len(frame),
            number_of_donors=int(frame["patient_id"].nunique()),
            age_low=int(ages.min()) if len(ages) else None,
            age_high=int(ages.max()) if len(ages) else None,
            sex=list(dict.fromkeys(frame["sex"].dropna())),
            materials=list(dict.fromkeys(frame["material"].dropna())),
            storage_temperatures=list(dict.fromkeys(frame["storage_temperature"].dropna())),
            diagnosis_available=list(dict.fromkeys(diagnoses)),
        ))
    return collections


# ------------------------------------------------------------------------------
# Tabular source
# ------------------------------------------------------------------------------

SPECIMEN_COLUMNS = {
    "specimen_id",
    "patient_id",
    "collection_id",
    "sex",
    "birth_date",
    "collection_date",
    "material",
    "storage_temperature",
    "diagnosis",
}

REQUIRED_SPECIMEN_COLUMNS = {"specimen_id", "patient_id"}

BIOBANK_SHEET = "biobanks"

BIOBANK_COLUMNS = [f.name for f in dataclasses.fields(Biobank)]

CAPABILITY_SEPARATOR = ","

DIAGNOSIS_SEPARATOR = ";"


def _normalize_headers(df: pd.DataFrame) -> pd.DataFrame:
    df.columns = (
        df.columns.astype(str)
          .str.strip()
          .str.replace(r"\s*\(.*?\)", "", regex=True)
          .str.replace(r"\s+", "_", regex=True)
          .str.lower()
    )
    return df


def _cell(value) -> typing.Optional[str]:
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def _date_cell(value) -> typing.Optional[date]:
    if value is None or pd.isna(value):
        return None
    parsed = pd.to_datetime(value, errors="coerce")
    return None if pd.isna(parsed) else parsed.date()


def _split_codes(value, separator: str = DIAGNOSIS_SEPARATOR) -> list[str]:
    text = _cell(value)
    if text is None:
        return []
    return [code.strip() for code in text.split(separator) if code.strip()]


class TabularSource(SourceClient):
    """
    A source store backed by one table of specimens.

    Each row is a specimen with its donor's attributes repeated. Workbooks may add
    a 'biobanks' sheet describing the local biobanks; a CSV table may sit next to
    a '<name>.biobanks.csv' file for the same purpose. Biobanks updated from the
    registry are written back there.
    """

    def __init__(self, path: typing.Union[str, pathlib.Path]):
        self.path = pathlib.Path(path)
        self.specimens: list[Specimen] = []
        self.patients: dict[str, Patient] = {}
        self.biobanks: dict[str, Biobank] = {}
        self._specimens_by_patient: typing.Optional[dict[str, list[Specimen]]] = None

    @property
    def is_workbook(self) -> bool:
        return self.path.suffix.lower() in (".xlsx", ".xlsm")

    @property
    def biobank_path(self) -> pathlib.Path:
        """Where the biobanks are read from and written back to."""
        if self.is_workbook:
            return self.path
        return self.path.with_name(f"{self.path.stem}.{BIOBANK_SHEET}.csv")

    def _read_tables(self) -> tuple[pd.DataFrame, typing.Optional[pd.DataFrame]]:
        if self.is_workbook:
            with pd.ExcelFile(self.path, engine="openpyxl") as excel:
                sheets = excel.sheet_names
                specimen_sheet = "specimens" if "specimens" in sheets else sheets[0]
                specimens = pd.read_excel(excel, sheet_name=specimen_sheet, dtype=str)
                biobanks = None
                if BIOBANK_SHEET in sheets:
                    biobanks = pd.read_excel(excel, sheet_name=BIOBANK_SHEET, dtype=str)
            return specimens, biobanks
        specimens = pd.read_csv(self.path, dtype=str, sep=None, engine="python")
        biobanks = None
        if self.biobank_path.exists():
            biobanks = pd.read_csv(self.biobank_path, dtype=str)
        return specimens, biobanks

    def init_resources(self) -> bool:
        try:
            specimens, biobanks = self._read_tables()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read {self.path}: {e}")
            return False

        specimens = _normalize_headers(specimens)
        missing = REQUIRED_SPECIMEN_COLUMNS - set(specimens.columns)
        if missing:
            logger.error(f"{self.path}: missing required columns: {sorted(missing)}")
            return False
        for column in SPECIMEN_COLUMNS - set(specimens.columns):
            specimens[column] = None

        self.specimens = []
        self.patients = {}
        self._specimens_by_patient = None
        for index, row in specimens.iterrows():
            specimen_id = _cell(row["specimen_id"]) or f"row-{index}"
            patient_id = _cell(row["patient_id"])
            if patient_id is not None and patient_id not in self.patients:
                self.patients[patient_id] = Patient(
                    id=patient_id,
                    sex=_cell(row["sex"]),
                    birth_date=_date_cell(row["birth_date"]),
                )
            self.specimens.append(Specimen(
                id=specimen_id,
                patient_id=patient_id,
                collection_id=_cell(row["collection_id"]),
                material=_cell(row["material"]),
                storage_temperature=_cell(row["storage_temperature"]),
                collection_date=_date_cell(row["collection_date"]),
                diagnoses=_split_codes(row["diagnosis"]),
            ))

        if biobanks is not None:
            self.biobanks = {}
            for _, row in _normalize_headers(biobanks).iterrows():
                entity = {k: _cell(v) for k, v in row.items()}
                if entity.get("id"):
                    entity["capabilities"] = _split_codes(entity.get("capabilities"), CAPABILITY_SEPARATOR)
                    biobank = Biobank.from_registry_dict(entity)
                    self.biobanks[biobank.id] = biobank

        logger.info(f"Loaded {len(self.specimens)} specimens of {len(self.patients)} patients from {self.path}")
        return True

    def fetch_specimens_by_collection(self, default_collection_id):
        grouped: dict[str, list[Specimen]] = {}
        for specimen in self.specimens:
            grouped.setdefault(specimen.collection_id or DEFAULT_COLLECTION_KEY, []).append(specimen)
        return resolve_default_collection(grouped, default_collection_id)

    def extract_patient_from_specimen(self, specimen: Specimen) -> typing.Optional[Patient]:
        if specimen.patient_id is None:
            return None
        return self.patients.get(specimen.patient_id)

    def extract_condition_codes_from_patient(self, patient: Patient) -> list[str]:
        return list(patient.condition_codes)

    def extract_diagnoses_from_specimen(self, specimen: Specimen) -> list[str]:
        return list(specimen.diagnoses)

    def find_specimens_of_patient(self, patient: Patient) -> list[Specimen]:
        if self._specimens_by_patient is None:
            self._specimens_by_patient = {}
            for specimen in self.specimens:
                self._specimens_by_patient.setdefault(specimen.patient_id, []).append(specimen)
        return list(self._specimens_by_patient.get(patient.id, []))

    def list_biobanks(self) -> typing.Optional[list[Biobank]]:
        return list(self.biobanks.values())

    def update_biobank(self, biobank: Biobank) -> bool:
        self.biobanks[biobank.id] = biobank
        rows = []
        for stored in self.biobanks.values():
            row = dataclasses.asdict(stored)
            row["capabilities"] = CAPABILITY_SEPARATOR.join(stored.capabilities)
            rows.append(row)
        frame = pd.DataFrame.from_records(rows, columns=BIOBANK_COLUMNS)
        try:
            if self.is_workbook:
                with pd.ExcelWriter(self.path, engine="openpyxl", mode="a", if_sheet_exists="replace") as writer:
                    frame.to_excel(writer, sheet_name=BIOBANK_SHEET, index=False)
            else:
                frame.to_csv(self.biobank_path, index=False)
        except (OSError, ValueError) as e:
            logger.error(f"Could not write biobanks to {self.biobank_path}: {e}")
            return False
        logger.info(f"Updated local biobank {biobank.id!r} in {self.biobank_path}")
        return True
