import asyncio
from typing import Dict, List, Optional
from urllib.parse import urljoin

from loguru import logger

from pageindex.models.page_record import BackLink, PageRecord
from pageindex.monitoring.metrics_server import BACKLINK_MERGES
from pageindex.storage.document_store import DocumentStore
from pageindex.storage.errors import StoreError
from pageindex.utils.url_utils import normalize_url


class BacklinkMerger:
    """
    Folds inbound links into the target page's backlink list.

    The merge is a plain read-modify-write through the store, without a
    version check. Two merges racing on the same page can both create it,
    or one can overwrite the other's list if they interleave between the
    read and the write. That loss is accepted: the crawler re-submits links
    on every pass and the lists converge.
    """

    def __init__(self, store: DocumentStore, concurrency: int = 16):
        self.store = store
        self.concurrency = concurrency

    async def merge_backlink(self, target_url: str, backlink: BackLink) -> str:
        """Add ``backlink`` to the page at ``target_url`` and return its stored id."""
        matches = await self.store.find_by_url(target_url)

        if matches:
            if len(matches) > 1:
                logger.warning(
                    f"{len(matches)} records stored for {target_url}, merging into {matches[0].id}"
                )
            current = matches[0]
            record, doc_id, index = current.record, current.id, current.index
            outcome = "updated"
        else:
            record, doc_id, index = PageRecord.for_url(target_url), None, None
            outcome = "created"

        merged = record.with_backlink(backlink).with_domain()
        stored_id = await self.store.upsert(merged, doc_id, index=index)

        BACKLINK_MERGES.labels(outcome=outcome).inc()
        logger.debug(f"Backlink {backlink.source} -> {target_url} ({outcome})")
        return stored_id

    async def merge_outbound_links(self, page: PageRecord) -> Dict[str, Optional[str]]:
        """
        Record every forward link of ``page`` as a backlink on its target.

        Relative hrefs are resolved against the page url. Returns target
        url -> stored id, with None for targets whose merge failed; failures
        are logged and do not stop the other targets.
        """
        source = page.url
        targets: Dict[str, BackLink] = {}
        for link in (*page.body.links.internal, *page.body.links.external):
            target = normalize_url(urljoin(source, link.href))
            if target is None or target == source:
                continue
            # last anchor text wins for repeated targets
            targets[target] = BackLink(text=link.text, source=source)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _merge(target: str, backlink: BackLink) -> Optional[str]:
            async with semaphore:
                try:
                    return await self.merge_backlink(target, backlink)
                except StoreError as e:
                    BACKLINK_MERGES.labels(outcome="failed").inc()
                    logger.error(f"Backlink merge {source} -> {target} failed: {e}")
                    return None

        ordered: List[str] = list(targets)
        stored = await asyncio.gather(*(_merge(target, targets[target]) for target in ordered))
        return dict(zip(ordered, stored))
