from __future__ import annotations

from typing import Iterable, List, Optional

from loguru import logger

from pageindex.models.page_record import CrawlerStatus, PageRecord
from pageindex.storage.backlink_merger import BacklinkMerger
from pageindex.storage.cursor_pager import CursorPage, CursorPager
from pageindex.storage.document_store import (
    HAS_OUTBOUND_LINKS,
    BulkItem,
    BulkResult,
    DocumentStore,
    PageById,
    StoredPage,
)
from pageindex.utils.config_loader import Config


PAGERANK_FIELD = "inferredData.ranks.pagerank"
SMART_RANK_FIELD = "inferredData.ranks.smartRank"


class PageIndexService:
    """Entry points used by the crawler (producer) and the rank job (consumer)."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        page_size: int = 200,
        merge_concurrency: int = 16,
        number_of_shards: int = 1,
        number_of_replicas: int = 0,
    ):
        self.store = store
        self.page_size = page_size
        self.number_of_shards = number_of_shards
        self.number_of_replicas = number_of_replicas
        self.pager = CursorPager(store, page_size=page_size)
        self.backlinks = BacklinkMerger(store, concurrency=merge_concurrency)

    @classmethod
    def from_config(cls, store: DocumentStore, config: Config) -> "PageIndexService":
        return cls(
            store,
            page_size=config.page_size,
            merge_concurrency=config.merge_concurrency,
            number_of_shards=config.number_of_shards,
            number_of_replicas=config.number_of_replicas,
        )

    # -------------------------------------------------------
    # crawler side
    # -------------------------------------------------------

    async def submit_page(self, record: PageRecord, id: Optional[str] = None) -> str:
        return await self.store.upsert(record, id)

    async def submit_batch(self, records: Iterable[BulkItem]) -> BulkResult:
        return await self.store.bulk_upsert(records)

    async def record_backlinks(self, page: PageRecord) -> dict:
        return await self.backlinks.merge_outbound_links(page)

    # -------------------------------------------------------
    # rank side
    # -------------------------------------------------------

    async def scan_all(self, after_key: Optional[str] = None, page_size: Optional[int] = None) -> CursorPage:
        return await self.pager.scan(after_key, page_size)

    async def top_needing_rank(self, limit: int) -> List[StoredPage]:
        return await self.store.top_by_field(SMART_RANK_FIELD, limit, CrawlerStatus.AWAITING_PAGERANK)

    async def global_sink_rank_mass(self) -> float:
        """Total pagerank held by pages with no outbound links."""
        return await self.store.aggregate_sum(PAGERANK_FIELD, HAS_OUTBOUND_LINKS)

    # -------------------------------------------------------
    # generations
    # -------------------------------------------------------

    async def ensure_generation(self, default_generation: Optional[str] = None) -> str:
        """Make sure the alias is backed by a generation, creating the first one if needed."""
        alias = self.store.alias
        if await self.store.aliases.is_bound(alias):
            return await self.store.aliases.write_target(alias)

        name = default_generation or f"{alias}-v1"
        if not await self.store.schema.generation_exists(name):
            await self.store.schema.create_generation(
                name,
                number_of_shards=self.number_of_shards,
                number_of_replicas=self.number_of_replicas,
            )
        await self.store.aliases.bind(alias, name)
        return name

    async def migrate(self, new_generation: str, *, drop_previous: bool = False) -> int:
        """
        Copy every record into ``new_generation`` and move the alias onto it.

        Records keep their ids. Writes that land on the old generation while
        the copy runs are picked up only if they sort after the cursor.
        """
        alias = self.store.alias
        await self.store.schema.create_generation(
            new_generation,
            number_of_shards=self.number_of_shards,
            number_of_replicas=self.number_of_replicas,
        )

        copied = 0
        async for page in self.pager.pages():
            batch = [PageById(stored.record, stored.id) for stored in page.records]
            result = await self.store.bulk_upsert(batch, index=new_generation)
            copied += len(result.succeeded)
            for failure in result.failures:
                logger.error(f"Migration of {failure.id} into {new_generation} failed: {failure.error}")

        previous = await self.store.aliases.cutover(alias, new_generation)
        logger.info(f"Migrated {copied} record(s) into {new_generation}")

        if drop_previous:
            for name in sorted(previous):
                await self.store.schema.drop_generation(name)
        return copied
