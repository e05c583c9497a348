import typing
from datetime import date

import pytest

from directory_sync.collection import Biobank, Collections
from directory_sync.fact_table import FactRecord
from directory_sync.input_dataset import InputDataset, InputRow
from directory_sync.registry import RegistryClient
from directory_sync.source import Patient, SourceClient, Specimen

COLLECTION_ID = "bbmri-eric:ID:DE_12345:collection:main"
OTHER_COLLECTION_ID = "bbmri-eric:ID:DE_12345:collection:second"


def make_fact(n=1, collection_id=COLLECTION_ID, donors=10, samples=12, **kwargs) -> FactRecord:
    values = dict(
        id=f"bbmri-eric:factID:DE_12345:collection:main:{n}",
        collection_id=collection_id,
        sex="FEMALE",
        age_range="Adult",
        diagnosis="urn:miriam:icd:C75",
        sample_material="SERUM",
        donor_count=donors,
        sample_count=samples,
        last_update="2024-01-01",
    )
    values.update(kwargs)
    return FactRecord(**values)


class FakeRegistry(RegistryClient):
    """In-memory registry that records every call made to it."""

    def __init__(self, mock=False, valid_codes=(), pages=None, failing_blocks=(), biobanks=None):
        super().__init__(mock=mock)
        self.valid_codes = set(valid_codes)
        self.pages = list(pages or [])
        self.failing_blocks = set(failing_blocks)
        self.biobanks = dict(biobanks or {})
        self.login_ok = True
        self.fetched_collections = Collections()
        self.submitted_blocks: list[list] = []
        self.submitted_collections: list[Collections] = []
        self.deleted: list[list[str]] = []
        self.validity_checks: list[str] = []

    def login(self):
        return self.login_ok

    def fetch_biobank(self, biobank_id):
        return self.biobanks.get(biobank_id)

    def fetch_collections(self, country_code, collection_ids):
        return self.fetched_collections

    def submit_collections(self, collections):
        self.submitted_collections.append(collections)
        return True

    def submit_fact_block(self, country_code, records):
        self.submitted_blocks.append(list(records))
        return len(self.submitted_blocks) not in self.failing_blocks

    def next_fact_id_page(self, country_code, collection_id):
        if not self.pages:
            return []
        return self.pages.pop(0)

    def delete_facts(self, country_code, fact_ids):
        self.deleted.append(list(fact_ids))
        return True

    def is_valid_diagnosis_code(self, code):
        self.validity_checks.append(code)
        return code in self.valid_codes


class InMemorySource(SourceClient):
    """Source store over plain lists of patients and specimens."""

    def __init__(self, patients: typing.Iterable[Patient] = (), specimens: typing.Iterable[Specimen] = (), biobanks=()):
        self.patients = {p.id: p for p in patients}
        self.specimens = list(specimens)
        self.biobanks = {b.id: b for b in biobanks}
        self.init_ok = True
        self.updated_biobanks: list[Biobank] = []

    def init_resources(self):
        return self.init_ok

    def fetch_specimens_by_collection(self, default_collection_id):
        grouped = {}
        for specimen in self.specimens:
            grouped.setdefault(specimen.collection_id or default_collection_id, []).append(specimen)
        return grouped

    def extract_patient_from_specimen(self, specimen):
        return self.patients.get(specimen.patient_id)

    def extract_condition_codes_from_patient(self, patient):
        return list(patient.condition_codes)

    def extract_diagnoses_from_specimen(self, specimen):
        return list(specimen.diagnoses)

    def find_specimens_of_patient(self, patient):
        return [s for s in self.specimens if s.patient_id == patient.id]

    def list_biobanks(self):
        return list(self.biobanks.values())

    def update_biobank(self, biobank):
        self.updated_biobanks.append(biobank)
        return True


@pytest.fixture
def make_row():
    """Builder for InputRows with sensible defaults."""

    def _make_row(subject_id="p1", collection_id=COLLECTION_ID, sex="female",
                  material="blood-serum", age="47", diagnosis="C75"):
        return InputRow(
            collection_id=collection_id,
            subject_id=subject_id,
            sex=sex,
            sample_material=material,
            age_at_diagnosis=age,
            diagnosis=diagnosis,
        )

    return _make_row


@pytest.fixture
def populated_dataset(make_row):
    """12 donors sharing one group in the main collection, plus a rare group of 2 donors."""
    dataset = InputDataset(min_donors=10)
    for i in range(12):
        dataset.add_row(make_row(subject_id=f"p{i}"))
    # one donor with a second specimen in the same group
    dataset.add_row(make_row(subject_id="p0"))
    for i in range(2):
        dataset.add_row(make_row(subject_id=f"r{i}", diagnosis="E23.1"))
    return dataset


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def small_source():
    """Twelve patients with one serum specimen each, all diagnosed C75."""
    patients = [
        Patient(id=f"p{i}", sex="female" if i % 2 else "male", birth_date=date(1970, 1, 1), condition_codes=["C75"])
        for i in range(12)
    ]
    specimens = [
        Specimen(
            id=f"s{i}",
            patient_id=f"p{i}",
            collection_id=COLLECTION_ID,
            material="blood-serum",
            storage_temperature="temperatureGN",
            collection_date=date(2020, 6, 1),
        )
        for i in range(12)
    ]
    biobanks = [Biobank(id="bbmri-eric:ID:DE_12345", name="Local name")]
    return InMemorySource(patients, specimens, biobanks)
