"""
Sync configuration.

Every setting can come from a ``DS_*`` environment variable (e.g. ``DS_RETRY_MAX``,
``DS_DIRECTORY_URL``); the CLI options read the same variables and override them.
"""

from __future__ import annotations

import logging
import os
import typing
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)

ENV_PREFIX = "DS_"
SUPPORTED_APIS = ("rest", "graphql")
SUPPORTED_OUTPUT_FORMATS = ("csv", "xlsx")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name}: expected a boolean, got {raw!r}")


@dataclass
class SyncConfig:
    """
    Settings for one sync job.

    Attributes:
        retry_max: Passes attempted per invocation before giving up.
        retry_interval: Seconds to wait between attempts.
        timer_cron: UNIX cron expression; empty means run once and exit.
        directory_url: Base URL of the registry.
        directory_user_name: Registry login name.
        directory_user_pass: Registry password.
        directory_user_token: Preconfigured registry token, used instead of a login.
        default_collection_id: Collection for specimens that name none.
        allow_star_model: Whether to push the star model fact table.
        min_donors: Groups with fewer donors are suppressed.
        max_facts: Cap on the number of facts; negative means no cap.
        mock: Skip every registry write while still running the aggregation.
        only_login: Check the registry login and stop.
        write_to_file: Write facts and collections to files instead of the registry.
        output_directory: Where write_to_file puts its files.
        output_format: 'csv' or 'xlsx' for write_to_file.
        api: Registry API flavour, 'rest' or 'graphql'.
        import_biobanks: Pull biobank metadata from the registry after a push.
        import_collections: Push collection summaries to the registry.
    """

    retry_max: int = 10
    retry_interval: int = 20
    timer_cron: str = ""
    directory_url: str = ""
    directory_user_name: str = ""
    directory_user_pass: str = ""
    directory_user_token: str = ""
    default_collection_id: str = ""
    allow_star_model: bool = True
    min_donors: int = 10
    max_facts: int = -1
    mock: bool = False
    only_login: bool = False
    write_to_file: bool = False
    output_directory: str = "."
    output_format: str = "csv"
    api: str = "rest"
    import_biobanks: bool = True
    import_collections: bool = True

    def __post_init__(self):
        if self.retry_max < 1:
            raise ValueError(f"retry_max must be >= 1, got {self.retry_max}")
        if self.retry_interval < 0:
            raise ValueError(f"retry_interval must be >= 0, got {self.retry_interval}")
        if self.min_donors < 0:
            raise ValueError(f"min_donors must be >= 0, got {self.min_donors}")
        if self.api not in SUPPORTED_APIS:
            raise ValueError(f"api must be one of {SUPPORTED_APIS}, got {self.api!r}")
        if self.output_format not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {SUPPORTED_OUTPUT_FORMATS}, got {self.output_format!r}")
        self.directory_url = self.directory_url.rstrip("/")

    @property
    def has_credentials(self) -> bool:
        return bool(self.directory_user_token) or bool(self.directory_user_name and self.directory_user_pass)

    @classmethod
    def from_env(cls, environ: typing.Optional[typing.Mapping[str, str]] = None, **overrides) -> "SyncConfig":
        """
        Build a config from ``DS_<FIELD>`` variables, then apply ``overrides``.

        Overrides that are None are ignored, so unset CLI options fall through to
        the environment and then to the defaults.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, typing.Any] = {}
        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            if f.type in ("bool", bool):
                values[f.name] = _parse_bool(f.name, raw)
            elif f.type in ("int", int):
                values[f.name] = int(raw)
            else:
                values[f.name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
