"""
BBMRI-ERIC identifier helpers.

Registry identifiers look like ``bbmri-eric:ID:DE_12345:collection:abc``. The two
letters after ``ID:`` select the national node, so they also pick the
country-scoped registry endpoints.
"""

from __future__ import annotations

import logging
import re
import typing
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ID_PREFIX = "bbmri-eric:ID:"
FACT_ID_PREFIX = "bbmri-eric:factID:"

_ID_PATTERN = re.compile(r"^bbmri-eric:ID:([a-zA-Z]{2})(_.+)$")


@dataclass(frozen=True)
class BbmriEricId:
    """
    A parsed BBMRI-ERIC identifier.

    Attributes:
        country_code: Upper-cased two-letter national node code (e.g. 'DE').
        suffix: Everything after the country code, starting with '_'.
    """

    country_code: str
    suffix: str

    @classmethod
    def parse(cls, value: typing.Optional[str]) -> typing.Optional["BbmriEricId"]:
        """Parse an identifier, returning None when it does not have the BBMRI-ERIC shape."""
        if value is None:
            return None
        match = _ID_PATTERN.match(value)
        if match is None:
            logger.info(f"{value!r} is not a valid BBMRI-ERIC identifier")
            return None
        return cls(country_code=match.group(1).upper(), suffix=match.group(2))

    def __str__(self) -> str:
        return f"{ID_PREFIX}{self.country_code}{self.suffix}"


def country_code_of(identifier: typing.Optional[str]) -> typing.Optional[str]:
    parsed = BbmriEricId.parse(identifier)
    return parsed.country_code if parsed else None


def is_valid_collection_identifier(identifier: typing.Optional[str]) -> bool:
    """True for ``bbmri-eric:ID:<CC>_<biobank>:collection:<name>`` identifiers."""
    if not identifier:
        return False
    parts = identifier.split(":")
    return len(parts) == 5 and parts[1] == "ID" and parts[3] == "collection"


def fact_id(collection_id: str, sequence: int) -> str:
    """Synthetic fact id: fact prefix + the collection id's suffix + a sequence number."""
    if not collection_id.startswith(ID_PREFIX) or len(collection_id) == len(ID_PREFIX):
        raise ValueError(f"Cannot derive a fact id from {collection_id!r}")
    return f"{FACT_ID_PREFIX}{collection_id[len(ID_PREFIX):]}:{sequence}"
