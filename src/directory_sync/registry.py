"""
Registry client contract and the star model reconciliation protocol.

Concrete clients (REST, GraphQL, file) implement a handful of request-shaped
primitives. The batching, pagination and deletion logic that keeps the registry's
fact table in step with a freshly computed star model lives here, once, on top of
those primitives.
"""

import abc
import logging
import typing

from .collection import Biobank, Collections
from .errors import RegistryError
from .fact_table import FactRecord, FactTable

logger = logging.getLogger(__name__)

FACT_BLOCK_SIZE = 1000


class RegistryClient(metaclass=abc.ABCMeta):
    """
    Base class for registry clients.

    In ``mock`` mode every write succeeds without touching the registry, while
    reads and the local aggregation still run.
    """

    def __init__(self, mock: bool = False):
        self.mock = mock

    # ------------------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------------------

    @abc.abstractmethod
    def login(self) -> bool:
        pass

    @abc.abstractmethod
    def fetch_biobank(self, biobank_id: str) -> typing.Optional[Biobank]:
        pass

    @abc.abstractmethod
    def fetch_collections(self, country_code: typing.Optional[str], collection_ids: list[str]) -> typing.Optional[Collections]:
        """Fetch registry-side versions of the given collections; None on failure."""
        pass

    @abc.abstractmethod
    def submit_collections(self, collections: Collections) -> bool:
        pass

    @abc.abstractmethod
    def submit_fact_block(self, country_code: typing.Optional[str], records: list[FactRecord]) -> bool:
        pass

    @abc.abstractmethod
    def next_fact_id_page(self, country_code: typing.Optional[str], collection_id: str) -> typing.Optional[list[str]]:
        """Ids of facts still stored for a collection. ``[]`` ends paging, None signals failure."""
        pass

    @abc.abstractmethod
    def delete_facts(self, country_code: typing.Optional[str], fact_ids: list[str]) -> bool:
        pass

    @abc.abstractmethod
    def is_valid_diagnosis_code(self, code: str) -> bool:
        pass

    # ------------------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------------------

    def update_star_model(self, fact_table: FactTable) -> bool:
        """
        Replace the registry's facts for every collection in ``fact_table``.

        Existing facts are deleted first, then the new facts are submitted in
        blocks of FACT_BLOCK_SIZE. The first failing block ends the update and
        the remaining blocks are not sent.
        """
        if not self.delete_star_model(fact_table):
            logger.warning("update_star_model: could not delete existing facts")
            return False

        country_code = fact_table.country_code
        blocks = fact_table.blocks(FACT_BLOCK_SIZE)
        for index, block in enumerate(blocks, start=1):
            FactTable.inject_national_node(block, country_code)
            if self.mock:
                continue
            if not self.submit_fact_block(country_code, block):
                logger.warning(f"update_star_model: block {index} of {len(blocks)} was rejected")
                return False
            logger.debug(f"update_star_model: submitted block {index} of {len(blocks)} ({len(block)} facts)")
        logger.info(f"update_star_model: submitted {len(fact_table)} facts in {len(blocks)} blocks")
        return True

    def delete_star_model(self, fact_table: FactTable) -> bool:
        """Page through and delete the stored facts of each collection in ``fact_table``."""
        if self.mock:
            return True
        country_code = fact_table.country_code
        try:
            for collection_id in fact_table.collection_ids:
                if not self._delete_collection_facts(country_code, collection_id):
                    return False
        except RegistryError as e:
            logger.warning(f"delete_star_model: {e}")
            return False
        return True

    def _delete_collection_facts(self, country_code: typing.Optional[str], collection_id: str) -> bool:
        deleted = 0
        while True:
            page = self.next_fact_id_page(country_code, collection_id)
            if page is None:
                logger.warning(f"Could not list facts of {collection_id!r}")
                return False
            if not page:
                break
            if not self.delete_facts(country_code, page):
                logger.warning(f"Could not delete {len(page)} facts of {collection_id!r}")
                return False
            deleted += len(page)
        logger.debug(f"Deleted {deleted} facts of {collection_id!r}")
        return True

    def update_collections(self, collections: Collections) -> bool:
        """Merge registry-owned attributes into ``collections`` and push them."""
        if self.mock:
            return True
        fetched = self.fetch_collections(collections.country_code, collections.ids)
        if fetched is None:
            logger.warning("update_collections: could not fetch collections from the registry")
            return False
        if not collections.merge_registry_attributes(fetched):
            logger.warning("update_collections: no local collection is known to the registry")
            return False
        return self.submit_collections(collections)
