import pandas as pd
import pytest

from directory_sync.collection import Collection, Collections
from directory_sync.fact_table import FACT_COLUMNS, FactTable
from directory_sync.file_registry import (
    COLLECTION_COLUMNS,
    COLLECTIONS_BASENAME,
    CSV_SEPARATOR,
    FACTS_BASENAME,
    FileRegistryClient,
)

from conftest import COLLECTION_ID, OTHER_COLLECTION_ID, make_fact


def test_rejects_unknown_format(tmp_path):
    with pytest.raises(ValueError):
        FileRegistryClient(tmp_path, "json")


def test_star_model_written_as_csv(tmp_path):
    registry = FileRegistryClient(tmp_path / "out")
    table = FactTable(make_fact(n) for n in range(1, 1203))

    assert registry.update_star_model(table)

    path = tmp_path / "out" / f"{FACTS_BASENAME}.csv"
    frame = pd.read_csv(path, sep=CSV_SEPARATOR)
    assert list(frame.columns) == FACT_COLUMNS
    # two blocks, appended into one file
    assert len(frame) == 1202
    assert set(frame["national_node"]) == {"DE"}


def test_star_model_written_as_excel(tmp_path):
    registry = FileRegistryClient(tmp_path, "xlsx")
    assert registry.update_star_model(FactTable([make_fact(1)]))

    frame = pd.read_excel(tmp_path / f"{FACTS_BASENAME}.xlsx", engine="openpyxl")
    assert frame.loc[0, "id"] == make_fact(1).id


def test_collections_get_defaults_and_flat_lists(tmp_path):
    registry = FileRegistryClient(tmp_path)
    collections = Collections([
        Collection(id=COLLECTION_ID, size=25, sex=["female", "male"], materials=["blood-serum"])
    ])

    assert registry.update_collections(collections)

    frame = pd.read_csv(tmp_path / f"{COLLECTIONS_BASENAME}.csv", sep=CSV_SEPARATOR, dtype=str)
    assert list(frame.columns) == COLLECTION_COLUMNS
    row = frame.iloc[0]
    assert row["country"] == "DE"
    assert row["national_node"] == "DE"
    assert row["type"] == "SAMPLE"
    assert row["data_categories"] == "BIOLOGICAL_SAMPLES"
    assert row["sex"] == "FEMALE,MALE"
    assert row["materials"] == "SERUM"
    assert row["order_of_magnitude"] == "1"


def test_reads_answer_like_an_empty_registry(tmp_path):
    registry = FileRegistryClient(tmp_path)
    assert registry.login()
    assert registry.fetch_biobank("bbmri-eric:ID:DE_12345") is None
    assert len(registry.fetch_collections("DE", [COLLECTION_ID])) == 0
    assert registry.next_fact_id_page("DE", COLLECTION_ID) == []
    assert registry.is_valid_diagnosis_code("anything")


def test_repeated_update_replaces_facts(tmp_path):
    registry = FileRegistryClient(tmp_path)
    table = FactTable([make_fact(1), make_fact(2)])

    assert registry.update_star_model(table)
    assert registry.update_star_model(table)

    frame = pd.read_csv(tmp_path / f"{FACTS_BASENAME}.csv", sep=CSV_SEPARATOR)
    assert sorted(frame["id"]) == sorted([make_fact(1).id, make_fact(2).id])


def test_update_keeps_facts_of_other_collections(tmp_path):
    registry = FileRegistryClient(tmp_path)
    other = make_fact(1, collection_id=OTHER_COLLECTION_ID, id="bbmri-eric:factID:DE_12345:collection:second:1")
    registry.update_star_model(FactTable([other]))

    assert registry.update_star_model(FactTable([make_fact(1)]))
    assert registry.update_star_model(FactTable([make_fact(1)]))

    assert sorted(registry.fact_frame["collection"]) == [COLLECTION_ID, OTHER_COLLECTION_ID]


def test_delete_pages_through_written_facts(tmp_path):
    registry = FileRegistryClient(tmp_path)
    registry.update_star_model(FactTable(make_fact(n) for n in range(1, 1203)))

    first_page = registry.next_fact_id_page("DE", COLLECTION_ID)
    assert len(first_page) == 1000
    assert registry.delete_facts("DE", first_page)
    assert len(registry.next_fact_id_page("DE", COLLECTION_ID)) == 202
