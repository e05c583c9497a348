import pytest

from directory_sync.ids import (
    BbmriEricId,
    country_code_of,
    fact_id,
    is_valid_collection_identifier,
)


def test_parse_round_trips_and_upper_cases_country():
    parsed = BbmriEricId.parse("bbmri-eric:ID:de_12345:collection:main")
    assert parsed.country_code == "DE"
    assert parsed.suffix == "_12345:collection:main"
    assert str(parsed) == "bbmri-eric:ID:DE_12345:collection:main"


def test_parse_rejects_foreign_identifiers():
    assert BbmriEricId.parse("urn:something:else") is None
    assert BbmriEricId.parse("bbmri-eric:ID:D_1") is None
    assert BbmriEricId.parse(None) is None


def test_country_code_of():
    assert country_code_of("bbmri-eric:ID:AT_MUG") == "AT"
    assert country_code_of("nonsense") is None


def test_is_valid_collection_identifier():
    assert is_valid_collection_identifier("bbmri-eric:ID:DE_12345:collection:main")
    assert not is_valid_collection_identifier("bbmri-eric:ID:DE_12345")
    assert not is_valid_collection_identifier("bbmri-eric:ID:DE_12345:biobank:main")
    assert not is_valid_collection_identifier("")
    assert not is_valid_collection_identifier(None)


def test_fact_id_uses_collection_suffix():
    assert fact_id("bbmri-eric:ID:DE_12345:collection:main", 3) == "bbmri-eric:factID:DE_12345:collection:main:3"


@pytest.mark.parametrize("collection_id", ["short", "bbmri-eric:ID:", "other:ID:DE_1:collection:x"])
def test_fact_id_rejects_foreign_identifiers(collection_id):
    with pytest.raises(ValueError):
        fact_id(collection_id, 1)
