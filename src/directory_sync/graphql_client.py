"""
GraphQL (MOLGENIS EMX2) registry client.

EMX2 keeps each national node's data in its own database schema, each with its
own ``/api/graphql`` endpoint. The schema for a country is found by probing a
short list of candidates, country-specific first and then the shared ERIC
schema, and caching the first one that answers. Disease types live in the
separate DirectoryOntologies schema.
"""

from __future__ import annotations

import json
import logging
import typing

import requests

from .collection import Biobank, Collection, Collections
from .converter import MIRIAM_PREFIX
from .errors import RegistryError, RegistryResponseError
from .fact_table import FactRecord
from .ids import country_code_of
from .registry import RegistryClient
from .rest_client import DEFAULT_TIMEOUT, TOKEN_HEADER, url_combine

logger = logging.getLogger(__name__)

API_ENDPOINT = "/api/graphql"
ONTOLOGIES_ENDPOINT = "/DirectoryOntologies/api/graphql"

# EMX2 reference columns: entity references are keyed by id, ontology terms by name
ENTITY_REFERENCES = {"biobank", "contact", "head", "collection", "national_node", "network"}
ONTOLOGY_REFERENCES = {
    "country",
    "type",
    "data_categories",
    "sex",
    "materials",
    "storage_temperatures",
    "diagnosis_available",
    "age_range",
    "sample_type",
    "disease",
}

COLLECTION_FIELDS = (
    "id name description url "
    "biobank { id } contact { id } country { name } type { name } "
    "data_categories { name } network { id }"
)


def schema_candidates(country_code: typing.Optional[str]) -> list[str]:
    """GraphQL endpoints that may hold a country's data, most specific first."""
    candidates = []
    if country_code:
        candidates.append(f"/ERIC-{country_code}{API_ENDPOINT}")
    candidates.append(f"/ERIC{API_ENDPOINT}")
    candidates.append(f"/BBMRI-ERIC{API_ENDPOINT}")
    return candidates


def to_graphql_literal(value: typing.Any) -> str:
    """
    Render a Python value as a GraphQL input literal.

    >>> to_graphql_literal({"id": "x", "size": 3, "sex": [{"name": "FEMALE"}]})
    '{id: "x", size: 3, sex: [{name: "FEMALE"}]}'
    """
    if isinstance(value, dict):
        return "{" + ", ".join(f"{k}: {to_graphql_literal(v)}" for k, v in value.items()) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_graphql_literal(v) for v in value) + "]"
    # JSON scalars are valid GraphQL scalars
    return json.dumps(value)


def to_emx2_entity(entity: dict[str, typing.Any]) -> dict[str, typing.Any]:
    """Wrap reference attributes of a flat registry entity into EMX2 reference objects."""
    converted: dict[str, typing.Any] = {}
    for attribute, value in entity.items():
        if attribute in ENTITY_REFERENCES:
            key = "id"
        elif attribute in ONTOLOGY_REFERENCES:
            key = "name"
        else:
            converted[attribute] = value
            continue
        if isinstance(value, list):
            converted[attribute] = [{key: v} for v in value]
        else:
            converted[attribute] = {key: value}
    return converted


class GraphqlRegistryClient(RegistryClient):

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
        self._schema_endpoints: dict[typing.Optional[str], str] = {}
        self._served_fact_pages: set[str] = set()

    # ------------------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers[TOKEN_HEADER] = self.token
        return headers

    def _run(self, endpoint: str, command: str) -> typing.Optional[dict]:
        """
        POST a GraphQL command. Returns the ``data`` object, or None when the
        response carries errors instead of data.
        """
        url = url_combine(self.base_url, endpoint)
        try:
            resp = self.session.post(
                url,
                json={"query": command},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise RegistryError(f"POST {url} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise RegistryError(f"POST {url}: HTTP {resp.status_code}: {str(resp.text)[:200]}")
        try:
            body = resp.json()
        except ValueError as e:
            raise RegistryResponseError(f"POST {url}: response is not JSON") from e
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            logger.warning(f"GraphQL errors from {url}: {body.get('errors') if isinstance(body, dict) else body}")
            return None
        return data

    def _query_list(self, endpoint: str, table: str, filter_: typing.Optional[str], fields: str) -> typing.Optional[list]:
        arguments = f"( filter: {filter_} )" if filter_ else ""
        data = self._run(endpoint, f"query {{ {table}{arguments} {{ {fields} }} }}")
        if data is None:
            return None
        # EMX2 omits the table key entirely when nothing matches
        items = data.get(table) or []
        if not isinstance(items, list):
            raise RegistryResponseError(f"{table}: expected a list, got {items!r}")
        return items

    def _endpoint_answers(self, endpoint: str) -> bool:
        url = url_combine(self.base_url, endpoint)
        try:
            resp = self.session.get(url, headers=self._headers(), timeout=self.timeout)
            body = resp.json()
        except (requests.RequestException, ValueError):
            return False
        return 200 <= resp.status_code < 300 and isinstance(body, dict) and "errors" not in body

    def schema_endpoint(self, country_code: typing.Optional[str]) -> str:
        """The GraphQL endpoint of the schema holding ``country_code``'s data."""
        if country_code not in self._schema_endpoints:
            for candidate in schema_candidates(country_code):
                if self._endpoint_answers(candidate):
                    logger.info(f"Using {candidate} for country {country_code}")
                    self._schema_endpoints[country_code] = candidate
                    break
            else:
                raise RegistryError(f"No GraphQL schema found for country {country_code!r}")
        return self._schema_endpoints[country_code]

    # ------------------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------------------

    def login(self) -> bool:
        if self.mock:
            return True
        if not (self.username and self.password):
            return bool(self.token)
        command = (
            f"mutation {{ signin(password: {json.dumps(self.password)}, email: {json.dumps(self.username)}) "
            f"{{ message token }} }}"
        )
        try:
            data = self._run(API_ENDPOINT, command)
        except RegistryError as e:
            logger.warning(f"login failed: {e}")
            return False
        token = ((data or {}).get("signin") or {}).get("token")
        if not token:
            logger.warning("login failed: no token in the registry response")
            return False
        self.token = token
        return True

    def fetch_biobank(self, biobank_id: str) -> typing.Optional[Biobank]:
        try:
            items = self._query_list(
                self.schema_endpoint(country_code_of(biobank_id)),
                "Biobanks",
                f"{{ id: {{ equals: {json.dumps(biobank_id)} }} }}",
                "id name acronym description url juridical_person",
            )
            if not items:
                logger.warning(f"fetch_biobank: biobank {biobank_id!r} not found")
                return None
            return Biobank.from_registry_dict(items[0])
        except RegistryError as e:
            logger.warning(f"fetch_biobank({biobank_id!r}): {e}")
            return None

    def fetch_collections(self, country_code, collection_ids) -> typing.Optional[Collections]:
        fetched = Collections()
        try:
            endpoint = self.schema_endpoint(country_code)
            for collection_id in collection_ids:
                items = self._query_list(
                    endpoint,
                    "Collections",
                    f"{{ id: {{ equals: {json.dumps(collection_id)} }} }}",
                    COLLECTION_FIELDS,
                )
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
            endpoint = self.schema_endpoint(collections.country_code)
            for entity in collections.to_registry_list():
                literal = to_graphql_literal(to_emx2_entity(entity))
                if self._run(endpoint, f"mutation {{ update(Collections: {literal}) {{ message }} }}") is None:
                    logger.warning(f"submit_collections: update of {entity['id']!r} was rejected")
                    return False
        except RegistryError as e:
            logger.warning(f"submit_collections: {e}")
            return False
        return True

    def submit_fact_block(self, country_code, records: list[FactRecord]) -> bool:
        if self.mock:
            return True
        try:
            endpoint = self.schema_endpoint(country_code)
            for record in records:
                literal = to_graphql_literal(to_emx2_entity(record.to_registry_dict()))
                if self._run(endpoint, f"mutation {{ insert(CollectionFacts: {literal}) {{ message }} }}") is None:
                    logger.warning(f"submit_fact_block: insert of {record.id!r} was rejected")
                    return False
        except RegistryError as e:
            logger.warning(f"submit_fact_block: {e}")
            return False
        return True

    def next_fact_id_page(self, country_code, collection_id: str) -> typing.Optional[list[str]]:
        # EMX2 does not page: the first call returns everything, the next one ends the loop
        if collection_id in self._served_fact_pages:
            self._served_fact_pages.discard(collection_id)
            return []
        try:
            items = self._query_list(
                self.schema_endpoint(country_code),
                "CollectionFacts",
                f"{{ collection: {{ id: {{ equals: {json.dumps(collection_id)} }} }} }}",
                "id",
            )
        except RegistryError as e:
            logger.warning(f"next_fact_id_page({collection_id!r}): {e}")
            return None
        if items is None:
            return None
        self._served_fact_pages.add(collection_id)
        return [item["id"] for item in items if isinstance(item, dict) and "id" in item]

    def delete_facts(self, country_code, fact_ids: list[str]) -> bool:
        if self.mock or not fact_ids:
            return True
        try:
            endpoint = self.schema_endpoint(country_code)
            for fact_id in fact_ids:
                command = f"mutation {{ delete(CollectionFacts: {{ id: {json.dumps(fact_id)} }}) {{ message }} }}"
                if self._run(endpoint, command) is None:
                    logger.warning(f"delete_facts: deletion of {fact_id!r} was rejected")
                    return False
        except RegistryError as e:
            logger.warning(f"delete_facts: {e}")
            return False
        return True

    def is_valid_diagnosis_code(self, code: str) -> bool:
        diagnosis = code if code.startswith(MIRIAM_PREFIX) else MIRIAM_PREFIX + code
        try:
            items = self._query_list(
                ONTOLOGIES_ENDPOINT,
                "DiseaseTypes",
                f"{{ name: {{ equals: {json.dumps(diagnosis)} }} }}",
                "name",
            )
        except RegistryError as e:
            logger.warning(f"is_valid_diagnosis_code({code!r}): {e}")
            return False
        return any(isinstance(item, dict) and item.get("name") == diagnosis for item in items or [])
