"""
Source store reading:
- TabularSource over CSV and Excel tables
- building the star model input and the collection summaries
"""

from datetime import date

import pandas as pd

from directory_sync.collection import Biobank
from directory_sync.converter import MIRIAM_PREFIX
from directory_sync.source import (
    DEFAULT_COLLECTION_KEY,
    Patient,
    Specimen,
    SpecimenReader,
    TabularSource,
    collect_diagnoses,
    populate_input_dataset,
    resolve_default_collection,
    summarize_collections,
)

from conftest import COLLECTION_ID, OTHER_COLLECTION_ID, InMemorySource

BIOBANK_ID = "bbmri-eric:ID:DE_12345"

CSV_TABLE = """Specimen ID,Patient ID,Collection ID,Sex,Birth Date,Collection Date,Material (source),Storage Temperature,Diagnosis
s1,p1,{cid},female,1970-03-01,2020-06-01,blood-serum,temperatureGN,C75;E23.1
s2,p1,{cid},female,1970-03-01,2021-06-01,dna,temperature2to10,
s3,p2,,male,,2020-01-01,tissue-formalin,,C10.9
s4,,{cid},male,1980-01-01,2020-01-01,dna,,
""".format(cid=COLLECTION_ID)


def write_csv(tmp_path, text=CSV_TABLE):
    path = tmp_path / "specimens.csv"
    path.write_text(text)
    return path


class TestTabularSource:

    def test_reads_csv_with_messy_headers(self, tmp_path):
        source = TabularSource(write_csv(tmp_path))
        assert source.init_resources()

        assert len(source.specimens) == 4
        assert set(source.patients) == {"p1", "p2"}
        first = source.specimens[0]
        assert first.material == "blood-serum"
        assert first.diagnoses == ["C75", "E23.1"]
        assert first.collection_date == date(2020, 6, 1)
        assert source.patients["p1"].birth_date == date(1970, 3, 1)
        assert source.patients["p2"].birth_date is None

    def test_missing_required_columns(self, tmp_path):
        source = TabularSource(write_csv(tmp_path, "id;sex\n1;female\n"))
        assert not source.init_resources()

    def test_unreadable_file(self, tmp_path):
        assert not TabularSource(tmp_path / "absent.csv").init_resources()

    def test_specimens_without_collection_go_to_default(self, tmp_path):
        source = TabularSource(write_csv(tmp_path))
        source.init_resources()

        grouped = source.fetch_specimens_by_collection(OTHER_COLLECTION_ID)
        assert [s.id for s in grouped[OTHER_COLLECTION_ID]] == ["s3"]

        grouped = source.fetch_specimens_by_collection(None)
        assert OTHER_COLLECTION_ID not in grouped
        assert DEFAULT_COLLECTION_KEY not in grouped

    def test_find_specimens_of_patient(self, tmp_path):
        source = TabularSource(write_csv(tmp_path))
        source.init_resources()
        specimens = source.find_specimens_of_patient(source.patients["p1"])
        assert [s.id for s in specimens] == ["s1", "s2"]

    def test_reads_workbook_with_biobank_sheet(self, tmp_path):
        path = tmp_path / "source.xlsx"
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            pd.DataFrame({
                "Specimen ID": ["s1"], "Patient ID": ["p1"], "Collection ID": [COLLECTION_ID], "Sex": ["female"],
            }).to_excel(writer, sheet_name="specimens", index=False)
            pd.DataFrame({"ID": ["bbmri-eric:ID:DE_12345"], "Name": ["Local"]}).to_excel(
                writer, sheet_name="biobanks", index=False
            )

        source = TabularSource(path)
        assert source.init_resources()
        assert [s.id for s in source.specimens] == ["s1"]
        assert [b.name for b in source.list_biobanks()] == ["Local"]

    def test_biobank_update_is_written_back_to_the_workbook(self, tmp_path):
        path = tmp_path / "source.xlsx"
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            pd.DataFrame({"Specimen ID": ["s1"], "Patient ID": ["p1"]}).to_excel(
                writer, sheet_name="specimens", index=False
            )
            pd.DataFrame({"ID": [BIOBANK_ID], "Name": ["Local"]}).to_excel(writer, sheet_name="biobanks", index=False)
        source = TabularSource(path)
        source.init_resources()

        biobank = source.list_biobanks()[0]
        biobank.update_from(Biobank(id=BIOBANK_ID, name="Registry", acronym="RB", capabilities=["cap1", "cap2"]))
        assert source.update_biobank(biobank)

        reread = TabularSource(path)
        assert reread.init_resources()
        assert [s.id for s in reread.specimens] == ["s1"]
        stored = reread.list_biobanks()[0]
        assert (stored.name, stored.acronym, stored.capabilities) == ("Registry", "RB", ["cap1", "cap2"])

    def test_biobank_update_is_written_next_to_a_csv_table(self, tmp_path):
        source = TabularSource(write_csv(tmp_path))
        source.init_resources()
        assert source.list_biobanks() == []

        assert source.update_biobank(Biobank(id=BIOBANK_ID, name="Registry"))

        assert source.biobank_path == tmp_path / "specimens.biobanks.csv"
        reread = TabularSource(source.path)
        reread.init_resources()
        assert [(b.id, b.name) for b in reread.list_biobanks()] == [(BIOBANK_ID, "Registry")]

    def test_invalid_collection_ids_are_skipped(self, tmp_path, caplog):
        text = CSV_TABLE + "s5,p2,short,male,1980-01-01,2020-01-01,dna,,\ns6,p2,other,male,1980-01-01,2020-01-01,dna,,\n"
        source = TabularSource(write_csv(tmp_path, text))
        source.init_resources()

        dataset = populate_input_dataset(source, min_donors=1)

        assert dataset.collection_ids == [COLLECTION_ID]
        assert "'short' is not a valid collection id" in caplog.text


def test_resolve_default_collection_rejects_invalid_id():
    grouped = {DEFAULT_COLLECTION_KEY: [Specimen(id="s1")]}
    assert resolve_default_collection(grouped, "not-a-collection") == {}


class TestSpecimenReader:

    def test_age_at_earliest_collection(self):
        patient = Patient(id="p1", birth_date=date(1970, 6, 15))
        source = InMemorySource([patient], [
            Specimen(id="s1", patient_id="p1", collection_date=date(2021, 6, 14)),
            Specimen(id="s2", patient_id="p1", collection_date=date(2020, 6, 15)),
        ])
        assert SpecimenReader(source).age_at_collection(patient) == 50

    def test_unknown_birth_date_is_counted(self):
        reader = SpecimenReader(InMemorySource())
        assert reader.age_at_collection(Patient(id="p1")) is None
        assert reader.null_age_count == 1

    def test_specimen_without_patient_is_skipped(self, caplog):
        source = InMemorySource([], [Specimen(id="orphan", patient_id="ghost")])
        frame = SpecimenReader(source).records(source.specimens)
        assert frame.empty
        assert "orphan" in caplog.text


def test_populate_input_dataset_from_csv(tmp_path):
    source = TabularSource(write_csv(tmp_path))
    source.init_resources()

    dataset = populate_input_dataset(source, OTHER_COLLECTION_ID, min_donors=1)

    rows = dataset.rows(COLLECTION_ID)
    # s1 has two diagnoses, s2 none, s4 has no patient
    assert [(r.subject_id, r.diagnosis) for r in rows] == [
        ("p1", MIRIAM_PREFIX + "C75"),
        ("p1", MIRIAM_PREFIX + "E23.1"),
        ("p1", None),
    ]
    assert {r.age_at_diagnosis for r in rows} == {"50"}
    assert rows[0].sample_material == "SERUM"
    assert dataset.rows(OTHER_COLLECTION_ID)[0].age_at_diagnosis == ""


def test_populate_merges_patient_and_specimen_diagnoses(small_source):
    small_source.specimens[0].diagnoses = ["C75", "C10"]
    dataset = populate_input_dataset(small_source)
    diagnoses = [r.diagnosis for r in dataset.rows(COLLECTION_ID) if r.subject_id == "p0"]
    assert diagnoses == [MIRIAM_PREFIX + "C75", MIRIAM_PREFIX + "C10"]


def test_collect_diagnoses(small_source):
    small_source.specimens[3].diagnoses = ["E23.1"]
    assert collect_diagnoses(small_source) == ["C75", "E23.1"]


def test_summarize_collections(small_source):
    small_source.specimens[0].storage_temperature = "temperature-18to-35"
    collections = summarize_collections(small_source)

    summary = collections.get(COLLECTION_ID)
    assert summary.size == 12
    assert summary.number_of_donors == 12
    assert summary.age_low == 50
    assert summary.age_high == 50
    assert summary.sex == ["male", "female"]
    assert summary.materials == ["blood-serum"]
    assert summary.storage_temperatures == ["temperature-18to-35", "temperatureGN"]
    assert summary.diagnosis_available == ["C75"]
