from __future__ import annotations

import asyncio
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from bson import ObjectId
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING, ReplaceOne
from pymongo.errors import BulkWriteError, ConfigurationError

from pageindex.models.page_record import CrawlerStatus, PageRecord, now_ms
from pageindex.monitoring.metrics_server import BULK_ITEMS, STORE_LATENCY, STORE_OPERATIONS
from pageindex.storage.alias_manager import AliasManager
from pageindex.storage.errors import PartialBatchFailure, QueryError, StoreError, translate_errors
from pageindex.storage.schema_builder import SchemaBuilder, field_paths, page_mapping
from pageindex.utils.config_loader import DEFAULT_INDEX_ALIAS, Config
from pageindex.utils.url_utils import normalize_url


DEFAULT_DB_NAME = "pageindex"

PAGE_FIELDS = field_paths(page_mapping())
NUMERIC_TYPES = ("rank_feature", "double", "long", "integer")

# -------------------------------------------------------
# Filters
# -------------------------------------------------------

HAS_URL: Dict[str, Any] = {"address.url": {"$exists": True, "$nin": ["", None]}}

HAS_OUTBOUND_LINKS: Dict[str, Any] = {
    "$or": [
        {"body.links.internal.0": {"$exists": True}},
        {"body.links.external.0": {"$exists": True}},
    ]
}


def status_is(status: Union[CrawlerStatus, str]) -> Dict[str, Any]:
    return {"crawlerStatus": CrawlerStatus(status).value}


def field_value(document: Mapping[str, Any], path: str) -> Any:
    """Read a dotted path out of a stored document; None when absent."""
    value: Any = document
    for part in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, list) and part.isdigit():
            position = int(part)
            value = value[position] if position < len(value) else None
        else:
            return None
        if value is None:
            return None
    return value


# -------------------------------------------------------
# Results
# -------------------------------------------------------

@dataclass(frozen=True)
class StoredPage:
    id: str
    index: str
    record: PageRecord


@dataclass(frozen=True)
class PageById:
    record: Union[PageRecord, Mapping[str, Any]]
    id: Optional[str] = None


@dataclass(frozen=True)
class BulkItemResult:
    """Outcome of one batch item; ``index`` is its 0-based position in the submitted batch."""

    index: int
    id: Optional[str]
    ok: bool
    error: Optional[str] = None


@dataclass
class BulkResult:
    items: List[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[BulkItemResult]:
        return [item for item in self.items if item.ok]

    @property
    def failures(self) -> List[BulkItemResult]:
        return [item for item in self.items if not item.ok]

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialBatchFailure(self.failures, len(self.items))


BulkItem = Union[PageRecord, Mapping[str, Any], PageById, Tuple[Any, Optional[str]]]


@contextmanager
def _observed(operation: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        with translate_errors(operation):
            yield
    except StoreError:
        STORE_OPERATIONS.labels(operation=operation, outcome="error").inc()
        raise
    else:
        STORE_OPERATIONS.labels(operation=operation, outcome="ok").inc()
    finally:
        STORE_LATENCY.labels(operation=operation).observe(time.perf_counter() - start)


class DocumentStore:
    """
    Page records over a logical collection.

    Reads fan out over every generation the alias resolves to; writes go to
    the most recently bound one. Passing ``index`` to an operation targets a
    single physical generation directly.
    """

    def __init__(
        self,
        uri: str,
        alias: str = DEFAULT_INDEX_ALIAS,
        db_name: str | None = None,
        *,
        server_timeout_ms: int = 5000,
        max_pool_size: int = 100,
        client=None,
    ):
        self.uri = uri
        self.alias = alias
        self.db_name = db_name
        self.server_timeout_ms = server_timeout_ms
        self.max_pool_size = max_pool_size
        self.client = client
        self.db = None
        self.aliases: AliasManager | None = None
        self.schema: SchemaBuilder | None = None

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> "DocumentStore":
        return cls(
            config.mongo_url,
            alias=config.index_alias,
            db_name=config.mongo_db,
            server_timeout_ms=config.server_timeout_ms,
            max_pool_size=config.max_pool_size,
            **kwargs,
        )

    # -------------------------------------------------------
    # Connection
    # -------------------------------------------------------

    async def connect(self) -> None:
        if self.client is None:
            self.client = AsyncIOMotorClient(
                self.uri,
                serverSelectionTimeoutMS=self.server_timeout_ms,
                maxPoolSize=self.max_pool_size,
            )

        db = None
        if self.db_name:
            db = self.client[self.db_name]
        else:
            try:
                db = self.client.get_default_database()
            except ConfigurationError:
                db = None

        if db is None:
            # no database in the URI
            db = self.client[DEFAULT_DB_NAME]

        with _observed("connect"):
            await db.command("ping")

        self.db_name = db.name
        self.db = db
        self.aliases = AliasManager(db)
        self.schema = SchemaBuilder(db)
        logger.info(f"Connected to MongoDB: {self.uri} (db={self.db_name}, alias={self.alias})")

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
            logger.info("MongoDB client connection closed")
        self.client = None
        self.db = None

    def _require_connection(self) -> None:
        if self.db is None:
            raise RuntimeError("DocumentStore is not connected")

    async def _read_targets(self, index: Optional[str]) -> List[str]:
        self._require_connection()
        if index is not None:
            return [index]
        return await self.aliases.generations(self.alias)

    async def _write_target(self, index: Optional[str]) -> str:
        self._require_connection()
        if index is not None:
            return index
        return await self.aliases.write_target(self.alias)

    # -------------------------------------------------------
    # Validation
    # -------------------------------------------------------

    @staticmethod
    def _coerce(record: Any) -> PageRecord:
        if isinstance(record, PageRecord):
            return record
        if isinstance(record, Mapping):
            try:
                return PageRecord.model_validate(record)
            except ValidationError as e:
                raise QueryError(f"invalid page record: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e
        raise QueryError(f"cannot store {type(record).__name__} as a page record")

    @staticmethod
    def _unpack(item: BulkItem) -> Tuple[Any, Optional[str]]:
        if isinstance(item, PageById):
            return item.record, item.id
        if isinstance(item, tuple) and len(item) == 2:
            return item[0], item[1]
        return item, None

    @staticmethod
    def _check_field(path: str, kinds: Optional[Sequence[str]] = None) -> None:
        kind = PAGE_FIELDS.get(path)
        if kind is None and path != "_id":
            raise QueryError(f"unknown field {path!r}")
        if kinds is not None and kind not in kinds:
            raise QueryError(f"field {path!r} of type {kind} cannot be used here")

    @classmethod
    def _check_query(cls, query: Optional[Mapping[str, Any]]) -> None:
        if not query:
            return
        for key, value in query.items():
            if key in ("$and", "$or", "$nor"):
                if not isinstance(value, (list, tuple)) or not value:
                    raise QueryError(f"{key} needs a non-empty list of filters")
                for sub in value:
                    cls._check_query(sub)
            elif key.startswith("$"):
                raise QueryError(f"unsupported top-level operator {key}")
            else:
                path = ".".join(part for part in key.split(".") if not part.isdigit())
                cls._check_field(path)

    def _to_stored(self, document: Mapping[str, Any], index: str) -> StoredPage:
        try:
            record = PageRecord.from_document(document)
        except ValidationError as e:
            raise QueryError(f"document {document.get('_id')} in {index} is not a page record") from e
        return StoredPage(id=str(document["_id"]), index=index, record=record)

    # -------------------------------------------------------
    # Writes
    # -------------------------------------------------------

    async def upsert(self, record: Union[PageRecord, Mapping[str, Any]], id: Optional[str] = None, *, index: Optional[str] = None) -> str:
        """Write ``record`` under ``id`` (or a fresh id), replacing any previous document."""
        page = self._coerce(record).stamped()
        doc_id = id or str(ObjectId())
        target = await self._write_target(index)

        with _observed("upsert"):
            await self.db[target].replace_one({"_id": doc_id}, page.to_document(), upsert=True)

        logger.debug(f"Upserted {page.url} as {doc_id} in {target}")
        return doc_id

    async def bulk_upsert(self, items: Iterable[BulkItem], *, index: Optional[str] = None) -> BulkResult:
        """
        Write a batch in one round trip.

        Every item gets its own outcome, keyed by its position in ``items``;
        a bad item never stops the others.
        """
        results: Dict[int, BulkItemResult] = {}
        prepared: List[Tuple[int, str, ReplaceOne]] = []
        stamp = now_ms()

        count = 0
        for position, item in enumerate(items):
            count += 1
            record, doc_id = self._unpack(item)
            try:
                page = self._coerce(record)
            except QueryError as e:
                results[position] = BulkItemResult(position, doc_id, False, str(e))
                continue
            doc_id = doc_id or str(ObjectId())
            prepared.append(
                (position, doc_id, ReplaceOne({"_id": doc_id}, page.stamped(stamp).to_document(), upsert=True))
            )

        if prepared:
            target = await self._write_target(index)
            rejected: Dict[int, str] = {}
            with _observed("bulk_upsert"):
                try:
                    await self.db[target].bulk_write([op for _, _, op in prepared], ordered=False)
                except BulkWriteError as e:
                    for error in e.details.get("writeErrors", []):
                        rejected[error["index"]] = error.get("errmsg", "write rejected")
                    if e.details.get("writeConcernErrors"):
                        logger.warning(f"Bulk write to {target} reported write concern errors")

            for op_position, (position, doc_id, _) in enumerate(prepared):
                if op_position in rejected:
                    results[position] = BulkItemResult(position, doc_id, False, rejected[op_position])
                else:
                    results[position] = BulkItemResult(position, doc_id, True)

        outcome = BulkResult([results[position] for position in range(count)])
        BULK_ITEMS.labels(outcome="ok").inc(len(outcome.succeeded))
        BULK_ITEMS.labels(outcome="failed").inc(len(outcome.failures))
        if outcome.failures:
            logger.warning(f"Bulk upsert: {len(outcome.failures)} of {count} item(s) failed")
        return outcome

    # -------------------------------------------------------
    # Point reads
    # -------------------------------------------------------

    async def get(self, doc_id: str, *, index: Optional[str] = None) -> Optional[StoredPage]:
        """Point lookup by stored id; the most recently bound generation is tried first."""
        for target in await self._read_targets(index):
            with _observed("get"):
                document = await self.db[target].find_one({"_id": doc_id})
            if document is not None:
                return self._to_stored(document, target)
        return None

    async def _find_in(self, target: str, query: Mapping[str, Any], limit: Optional[int]) -> List[StoredPage]:
        with _observed("find"):
            cursor = self.db[target].find(query)
            if limit:
                cursor = cursor.limit(limit)
            documents = await cursor.to_list(length=limit)
        return [self._to_stored(document, target) for document in documents]

    async def find_by_url(self, url: str, *, index: Optional[str] = None, limit: Optional[int] = None) -> List[StoredPage]:
        """Every record stored under the normalized ``url``, across bound generations."""
        key = normalize_url(url) or url.strip()
        targets = await self._read_targets(index)
        found = await asyncio.gather(*(self._find_in(target, {"address.url": key}, limit) for target in targets))
        matches = [page for pages in found for page in pages]
        if len(matches) > 1:
            logger.debug(f"{len(matches)} records share url {key}")
        return matches

    async def find_by_urls_bulk(
        self, urls: Sequence[str], *, index: Optional[str] = None
    ) -> Dict[str, Union[List[StoredPage], StoreError]]:
        """Look up many URLs at once; a failed lookup is returned in place of its matches."""
        unique = list(dict.fromkeys(urls))
        results = await asyncio.gather(
            *(self.find_by_url(url, index=index) for url in unique),
            return_exceptions=True,
        )
        by_url: Dict[str, Union[List[StoredPage], StoreError]] = {}
        for url, result in zip(unique, results):
            if isinstance(result, StoreError):
                logger.warning(f"Lookup of {url} failed: {result}")
            elif isinstance(result, BaseException):
                raise result
            by_url[url] = result
        return by_url

    # -------------------------------------------------------
    # Scans and aggregates
    # -------------------------------------------------------

    async def count(self, query: Optional[Mapping[str, Any]] = None, *, index: Optional[str] = None) -> int:
        query = HAS_URL if query is None else query
        self._check_query(query)
        total = 0
        for target in await self._read_targets(index):
            with _observed("count"):
                total += await self.db[target].count_documents(query)
        return total

    async def search_after(
        self,
        sort_field: str,
        after_key: Optional[Any],
        size: int,
        query: Optional[Mapping[str, Any]] = None,
        *,
        index: Optional[str] = None,
    ) -> List[StoredPage]:
        """Up to ``size`` records whose ``sort_field`` is strictly greater than ``after_key``, ascending."""
        self._check_field(sort_field, NUMERIC_TYPES + ("keyword",))
        self._check_query(query)
        if size < 1:
            raise QueryError("page size must be positive")

        condition = {sort_field: {"$gt": after_key}} if after_key is not None else {sort_field: {"$exists": True, "$ne": None}}
        combined = {"$and": [condition, dict(query)]} if query else condition

        documents: List[Tuple[Any, str, Mapping[str, Any]]] = []
        for target in await self._read_targets(index):
            with _observed("search_after"):
                cursor = self.db[target].find(combined).sort(sort_field, ASCENDING).limit(size)
                for document in await cursor.to_list(length=size):
                    documents.append((field_value(document, sort_field), target, document))

        documents.sort(key=lambda entry: (entry[0], entry[1]))
        return [self._to_stored(document, target) for _, target, document in documents[:size]]

    async def top_by_field(
        self,
        field_name: str,
        limit: int,
        status: Union[CrawlerStatus, str],
        *,
        index: Optional[str] = None,
    ) -> List[StoredPage]:
        """Up to ``limit`` records in ``status``, highest ``field_name`` first."""
        self._check_field(field_name, NUMERIC_TYPES + ("keyword",))
        if limit < 1:
            return []

        query = status_is(status)
        documents: List[Tuple[Any, str, Mapping[str, Any]]] = []
        for target in await self._read_targets(index):
            with _observed("top_by_field"):
                cursor = self.db[target].find(query).sort(field_name, DESCENDING).limit(limit)
                for document in await cursor.to_list(length=limit):
                    documents.append((field_value(document, field_name), target, document))

        def _rank(entry):
            value = entry[0]
            return (value is not None, value if value is not None else 0)

        documents.sort(key=_rank, reverse=True)
        return [self._to_stored(document, target) for _, target, document in documents[:limit]]

    async def aggregate_sum(
        self,
        field_name: str,
        exclude: Optional[Mapping[str, Any]] = None,
        *,
        index: Optional[str] = None,
    ) -> float:
        """Sum ``field_name`` over records not matching ``exclude``; 0.0 when none do."""
        self._check_field(field_name, NUMERIC_TYPES)
        self._check_query(exclude)

        match = {"$nor": [dict(exclude)]} if exclude else {}
        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "total": {"$sum": f"${field_name}"}}},
        ]

        total = 0.0
        for target in await self._read_targets(index):
            with _observed("aggregate_sum"):
                rows = await self.db[target].aggregate(pipeline).to_list(length=None)
            if rows:
                total += float(rows[0].get("total") or 0.0)
        return total

    async def random_pages(
        self,
        size: int = 1,
        status: Union[CrawlerStatus, str] = CrawlerStatus.CRAWLED,
        *,
        index: Optional[str] = None,
    ) -> List[StoredPage]:
        """A random sample of records in ``status``, for re-crawl spot checks."""
        if size < 1:
            return []
        pipeline = [{"$match": status_is(status)}, {"$sample": {"size": size}}]

        sampled: List[StoredPage] = []
        for target in await self._read_targets(index):
            with _observed("random_pages"):
                rows = await self.db[target].aggregate(pipeline).to_list(length=size)
            sampled.extend(self._to_stored(row, target) for row in rows)

        if len(sampled) > size:
            sampled = random.sample(sampled, size)
        return sampled
