import pytest

from directory_sync.config import SyncConfig


def test_defaults():
    config = SyncConfig.from_env({})
    assert config.retry_max == 10
    assert config.retry_interval == 20
    assert config.timer_cron == ""
    assert config.min_donors == 10
    assert config.max_facts == -1
    assert config.allow_star_model
    assert not config.mock
    assert config.api == "rest"


def test_reads_prefixed_environment():
    config = SyncConfig.from_env({
        "DS_RETRY_MAX": "3",
        "DS_MOCK": "true",
        "DS_ALLOW_STAR_MODEL": "no",
        "DS_DIRECTORY_URL": "https://directory.example.org/",
        "DS_TIMER_CRON": "0 3 * * *",
        "UNRELATED": "x",
    })
    assert config.retry_max == 3
    assert config.mock is True
    assert config.allow_star_model is False
    assert config.directory_url == "https://directory.example.org"
    assert config.timer_cron == "0 3 * * *"


def test_overrides_win_unless_none():
    config = SyncConfig.from_env({"DS_RETRY_MAX": "3", "DS_MIN_DONORS": "4"}, retry_max=7, min_donors=None)
    assert config.retry_max == 7
    assert config.min_donors == 4


@pytest.mark.parametrize(
    "environ",
    [
        {"DS_MOCK": "maybe"},
        {"DS_RETRY_MAX": "0"},
        {"DS_RETRY_MAX": "many"},
        {"DS_MIN_DONORS": "-1"},
        {"DS_API": "soap"},
        {"DS_OUTPUT_FORMAT": "json"},
    ],
)
def test_invalid_values_raise(environ):
    with pytest.raises(ValueError):
        SyncConfig.from_env(environ)


def test_has_credentials():
    assert SyncConfig(directory_user_token="t").has_credentials
    assert SyncConfig(directory_user_name="u", directory_user_pass="p").has_credentials
    assert not SyncConfig(directory_user_name="u").has_credentials
