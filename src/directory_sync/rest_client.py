"""
REST (MOLGENIS v2 API) registry client.

High level
----------
Entities live in per-country tables such as ``eu_bbmri_eric_DE_collections`` and
in country-agnostic tables such as ``eu_bbmri_eric_collections``. Every request is
tried against the country-scoped table first; a 404 from there is retried once on
the global table. Any other failure is raised as RegistryError and turned into a
failed result by the primitive that made the request.

Authentication uses either a preconfigured token or a username/password login;
the token travels in the ``x-molgenis-token`` header.
"""

from __future__ import annotations

import logging
import typing

import requests

from .collection import Biobank, Collection, Collections
from .converter import MIRIAM_PREFIX
from .errors import RegistryError, RegistryResponseError
from .fact_table import FactRecord
from .ids import country_code_of
from .registry import RegistryClient

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------------------

LOGIN_ENDPOINT = "/api/v1/login"
DISEASE_TYPE_ENDPOINT = "/api/v2/eu_bbmri_eric_disease_types"
FUNCTION_ENDPOINT = "/api/v2/eu_bbmri_eric_"
TOKEN_HEADER = "x-molgenis-token"

DEFAULT_TIMEOUT = 30.0


def url_combine(*parts: str) -> str:
    """Join URL pieces with exactly one '/' between them."""
    cleaned = [p.strip("/") for p in parts if p and p.strip("/")]
    url = "/".join(cleaned)
    if parts and parts[0].startswith("/") and not url.startswith("/"):
        url = "/" + url
    return url


def _items(body: typing.Any) -> list:
    if not isinstance(body, dict):
        raise RegistryResponseError(f"Expected a JSON object, got {body!r}")
    items = body.get("items", [])
    if not isinstance(items, list):
        raise RegistryResponseError(f"Expected 'items' to be a list, got {items!r}")
    return items


class RestRegistryClient(RegistryClient):

    def __init__(
        self,
        base_url: str,
        username: typing.Optional[str] = None,
        password: typing.Optional[str] = None,
        token: typing.Optional[str] = None,
        mock: bool = False,
        session: typing.Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        super().__init__(mock=mock)
        if not base_url:
            raise ValueError("base_url must be a non-empty string")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.token = token
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    # ------------------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------------------

    def _function_endpoint(self, function: str, country_code: typing.Optional[str] = None) -> str:
        scope = f"{country_code}_" if country_code else ""
        return f"{FUNCTION_ENDPOINT}{scope}{function}"

    def _execute(
        self,
        method: str,
        path: str,
        *,
        params: typing.Optional[dict] = None,
        payload: typing.Any = None,
    ) -> typing.Optional[typing.Any]:
        """
        Send one request. Returns the decoded body, ``{}`` for an empty body,
        or None when the resource does not exist (HTTP 404).
        """
        url = url_combine(self.base_url, path)
        headers = {"Accept": "application/json"}
        if self.token:
            headers[TOKEN_HEADER] = self.token
        try:
            resp = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise RegistryError(f"{method} {url} failed: {e}") from e

        if resp.status_code == 404:
            logger.debug(f"{method} {url}: not found")
            return None
        if not 200 <= resp.status_code < 300:
            raise RegistryError(f"{method} {url}: HTTP {resp.status_code}: {str(resp.text)[:200]}")
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise RegistryResponseError(f"{method} {url}: response is not JSON") from e

    def _with_fallback(
        self,
        method: str,
        function: str,
        country_code: typing.Optional[str],
        **kwargs,
    ) -> typing.Optional[typing.Any]:
        """Try the country-scoped table, then the global one if the first was not found."""
        if country_code:
            body = self._execute(method, self._function_endpoint(function, country_code), **kwargs)
            if body is not None:
                return body
            logger.debug(f"{function}: no {country_code} table, falling back to the global one")
        return self._execute(method, self._function_endpoint(function), **kwargs)

    # ------------------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------------------

    def login(self) -> bool:
        if self.mock:
            return True
        if not (self.username and self.password):
            # a preconfigured token needs no handshake
            return bool(self.token)
        try:
            body = self._execute(
                "POST",
                LOGIN_ENDPOINT,
                payload={"username": self.username, "password": self.password},
            )
        except RegistryError as e:
            logger.warning(f"login failed: {e}")
            return False
        if not isinstance(body, dict) or not body.get("token"):
            logger.warning("login failed: no token in the registry response")
            return False
        self.token = body["token"]
        return True

    def fetch_biobank(self, biobank_id: str) -> typing.Optional[Biobank]:
        try:
            body = self._with_fallback("GET", f"biobanks/{biobank_id}", country_code_of(biobank_id))
            if not body:
                logger.warning(f"fetch_biobank: biobank {biobank_id!r} not found")
                return None
            return Biobank.from_registry_dict(body)
        except RegistryError as e:
            logger.warning(f"fetch_biobank({biobank_id!r}): {e}")
            return None

    def fetch_collections(self, country_code, collection_ids) -> typing.Optional[Collections]:
        fetched = Collections()
        try:
            for collection_id in collection_ids:
                body = self._with_fallback(
                    "GET", "collections", country_code, params={"q": f'id=="{collection_id}"'}
                )
                items = _items(body) if body is not None else []
                if not items:
                    logger.warning(f"fetch_collections: {collection_id!r} is not in the registry")
                    continue
                fetched.add(Collection.from_registry_dict(items[0]))
        except RegistryError as e:
            logger.warning(f"fetch_collections: {e}")
            return None
        return fetched

    def submit_collections(self, collections: Collections) -> bool:
        if self.mock:
            return True
        try:
            body = self._with_fallback(
                "PUT",
                "collections",
                collections.country_code,
                payload={"entities": collections.to_registry_list()},
            )
        except RegistryError as e:
            logger.warning(f"submit_collections: {e}")
            return False
        return body is not None

    def submit_fact_block(self, country_code, records: list[FactRecord]) -> bool:
        if self.mock:
            return True
        try:
            body = self._with_fallback(
                "POST",
                "facts",
                country_code,
                payload={"entities": [record.to_registry_dict() for record in records]},
            )
        except RegistryError as e:
            logger.warning(f"submit_fact_block: {e}")
            return False
        return body is not None

    def next_fact_id_page(self, country_code, collection_id: str) -> typing.Optional[list[str]]:
        try:
            body = self._with_fallback(
                "GET", "facts", country_code, params={"q": f'collection=="{collection_id}"'}
            )
            if body is None:
                return None
            return [item["id"] for item in _items(body) if isinstance(item, dict) and "id" in item]
        except RegistryError as e:
            logger.warning(f"next_fact_id_page({collection_id!r}): {e}")
            return None

    def delete_facts(self, country_code, fact_ids: list[str]) -> bool:
        if self.mock or not fact_ids:
            return True
        try:
            body = self._with_fallback("DELETE", "facts", country_code, payload={"entityIds": fact_ids})
        except RegistryError as e:
            logger.warning(f"delete_facts: {e}")
            return False
        return body is not None

    def is_valid_diagnosis_code(self, code: str) -> bool:
        diagnosis = code if code.startswith(MIRIAM_PREFIX) else MIRIAM_PREFIX + code
        try:
            body = self._execute("GET", DISEASE_TYPE_ENDPOINT, params={"q": f"id=='{diagnosis}'"})
        except RegistryError as e:
            logger.warning(f"is_valid_diagnosis_code({code!r}): {e}")
            return False
        if not isinstance(body, dict) or not isinstance(body.get("total"), (int, float)):
            logger.warning(f"is_valid_diagnosis_code({code!r}): no 'total' in the response")
            return False
        return body["total"] > 0
