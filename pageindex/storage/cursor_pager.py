from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Mapping, Optional

from pageindex.storage.document_store import DocumentStore, StoredPage, field_value


DEFAULT_SORT_FIELD = "address.url"


@dataclass(frozen=True)
class CursorPage:
    records: List[StoredPage] = field(default_factory=list)
    next_after_key: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return self.next_after_key is None


class CursorPager:
    """
    Forward-only iteration keyed on one sort field.

    The cursor is just the sort key of the last record seen; nothing is held
    on the server, so an abandoned scan needs no cleanup. Each page starts
    strictly after the key, so records inserted behind the cursor are never
    returned again and a deleted boundary record cannot shift the next page.
    """

    def __init__(
        self,
        store: DocumentStore,
        page_size: int = 200,
        sort_field: str = DEFAULT_SORT_FIELD,
        query: Optional[Mapping[str, Any]] = None,
        index: Optional[str] = None,
    ):
        self.store = store
        self.page_size = page_size
        self.sort_field = sort_field
        self.query = query
        self.index = index

    async def scan(self, after_key: Optional[str] = None, page_size: Optional[int] = None) -> CursorPage:
        size = page_size or self.page_size
        records = await self.store.search_after(
            self.sort_field,
            after_key,
            size,
            self.query,
            index=self.index,
        )
        if len(records) < size:
            return CursorPage(records, None)

        last = records[-1].record.to_document()
        return CursorPage(records, field_value(last, self.sort_field))

    async def pages(self, after_key: Optional[str] = None) -> AsyncIterator[CursorPage]:
        """Yield pages until the collection is exhausted."""
        while True:
            page = await self.scan(after_key)
            if page.records:
                yield page
            if page.is_last:
                return
            after_key = page.next_after_key
