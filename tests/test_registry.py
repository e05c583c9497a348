"""
Reconciliation protocol shared by all registry clients:
- delete-then-submit of the star model, in blocks
- paged deletion of stored facts
- collection update with registry-owned attributes merged in
"""

from directory_sync.collection import Collection, Collections
from directory_sync.errors import RegistryError
from directory_sync.fact_table import FactTable

from conftest import COLLECTION_ID, FakeRegistry, make_fact


def big_table(n=2100):
    return FactTable(make_fact(i) for i in range(1, n + 1))


class TestUpdateStarModel:

    def test_submits_in_blocks_of_one_thousand(self, fake_registry):
        assert fake_registry.update_star_model(big_table())
        assert [len(block) for block in fake_registry.submitted_blocks] == [1000, 1000, 100]

    def test_stops_at_first_failing_block(self):
        registry = FakeRegistry(failing_blocks={1})
        assert not registry.update_star_model(big_table())
        assert len(registry.submitted_blocks) == 1

    def test_deletes_every_page_before_submitting(self):
        registry = FakeRegistry(pages=[["F1", "F2"], ["F3"]])
        assert registry.update_star_model(big_table(10))
        assert registry.deleted == [["F1", "F2"], ["F3"]]
        assert len(registry.submitted_blocks) == 1

    def test_failed_listing_aborts_without_submitting(self):
        registry = FakeRegistry(pages=[None])
        assert not registry.update_star_model(big_table(10))
        assert registry.submitted_blocks == []

    def test_failed_delete_aborts_paging_without_submitting(self):
        class RejectingDeletes(FakeRegistry):
            def delete_facts(self, country_code, fact_ids):
                super().delete_facts(country_code, fact_ids)
                return False

        registry = RejectingDeletes(pages=[["F1", "F2"], ["F3"]])
        assert not registry.update_star_model(big_table(10))
        assert registry.deleted == [["F1", "F2"]]
        assert registry.submitted_blocks == []

    def test_registry_error_during_delete_is_a_failure(self):
        class Broken(FakeRegistry):
            def next_fact_id_page(self, country_code, collection_id):
                raise RegistryError("boom")

        registry = Broken()
        assert not registry.update_star_model(big_table(10))
        assert registry.submitted_blocks == []

    def test_national_node_injected_only_where_missing(self, fake_registry):
        table = FactTable([make_fact(1), make_fact(2, national_node="AT")])
        fake_registry.update_star_model(table)
        submitted = fake_registry.submitted_blocks[0]
        assert [f.national_node for f in submitted] == ["DE", "AT"]

    def test_mock_mode_touches_nothing(self):
        registry = FakeRegistry(mock=True, pages=[["F1"]])
        assert registry.update_star_model(big_table(10))
        assert registry.deleted == []
        assert registry.submitted_blocks == []


class TestUpdateCollections:

    def test_submits_when_registry_knows_none(self, fake_registry):
        collections = Collections([Collection(id=COLLECTION_ID, size=10)])
        assert fake_registry.update_collections(collections)
        assert fake_registry.submitted_collections == [collections]

    def test_merges_registry_owned_attributes(self, fake_registry):
        fake_registry.fetched_collections = Collections([
            Collection(id=COLLECTION_ID, name="Registry name", biobank="bbmri-eric:ID:DE_12345", type=["CASE_CONTROL"])
        ])
        collections = Collections([Collection(id=COLLECTION_ID, name="Local name", size=10)])

        assert fake_registry.update_collections(collections)

        merged = collections.get(COLLECTION_ID)
        assert merged.name == "Registry name"
        assert merged.biobank == "bbmri-eric:ID:DE_12345"
        assert merged.type == ["CASE_CONTROL"]
        assert merged.size == 10

    def test_fails_when_no_local_collection_matches(self, fake_registry):
        fake_registry.fetched_collections = Collections([Collection(id="bbmri-eric:ID:DE_1:collection:other")])
        assert not fake_registry.update_collections(Collections([Collection(id=COLLECTION_ID)]))
        assert fake_registry.submitted_collections == []

    def test_fetch_failure(self, fake_registry):
        fake_registry.fetched_collections = None
        assert not fake_registry.update_collections(Collections([Collection(id=COLLECTION_ID)]))

    def test_mock_mode(self):
        registry = FakeRegistry(mock=True)
        assert registry.update_collections(Collections([Collection(id=COLLECTION_ID)]))
        assert registry.submitted_collections == []
