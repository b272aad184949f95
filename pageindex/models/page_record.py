from __future__ import annotations

import time
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from pageindex.utils.url_utils import get_domain, normalize_url, split_url_to_words


# bumped whenever the stored layout changes; older documents still load with defaults
SCHEMA_VERSION = 2

# exact-match tokens longer than this are not stored
MAX_KEYWORD_LENGTH = 256


def now_ms() -> int:
    return int(time.time() * 1000)


def _identity_url(value: Any) -> Any:
    # stored urls are always the normalized key, whatever the caller passed
    if isinstance(value, str):
        return normalize_url(value) or value.strip()
    return value


class _Value(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


class CrawlerStatus(str, Enum):
    CRAWLED = "Crawled"
    NOT_CRAWLED = "NotCrawled"
    AWAITING_PAGERANK = "AwaitingPagerank"
    DOES_NOT_EXIST = "DoesNotExist"
    ERROR = "Error"


class Address(_Value):
    url: str = Field(min_length=1)
    url_as_text: tuple[str, ...] = ()
    host_name: str = ""

    @field_validator("url", mode="before")
    @classmethod
    def _normalize_url(cls, value: Any) -> Any:
        return _identity_url(value)


class Metadata(_Value):
    title: str = ""
    description: str = ""
    open_graph_img_url: str = Field("", alias="openGraphImgURL")
    open_graph_title: str = ""
    open_graph_description: str = ""
    content_type: str = Field("", alias="type")
    tags: tuple[str, ...] = ()

    @field_validator("tags")
    @classmethod
    def _drop_oversized_tags(cls, tags: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(tag for tag in tags if len(tag) <= MAX_KEYWORD_LENGTH)

    @field_validator("content_type")
    @classmethod
    def _drop_oversized_type(cls, value: str) -> str:
        return value if len(value) <= MAX_KEYWORD_LENGTH else ""


class Headings(_Value):
    h1: tuple[str, ...] = ()
    h2: tuple[str, ...] = ()
    h3: tuple[str, ...] = ()
    h4: tuple[str, ...] = ()
    h5: tuple[str, ...] = ()
    h6: tuple[str, ...] = ()


class ForwardLink(_Value):
    text: str = ""
    href: str


class BodyLinks(_Value):
    internal: tuple[ForwardLink, ...] = ()
    external: tuple[ForwardLink, ...] = ()


class Body(_Value):
    headings: Headings = Field(default_factory=Headings)
    bold_text: tuple[str, ...] = ()
    article: tuple[str, ...] = ()
    links: BodyLinks = Field(default_factory=BodyLinks)


class BackLink(_Value):
    """An inbound link, identified by the page it comes from."""

    text: str = ""
    source: str = Field(min_length=1)

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> Any:
        return _identity_url(value)


class Ranks(_Value):
    pagerank: float = 0.0
    # rank features need a positive floor, hence 0.1 rather than 0.0
    smart_rank: float = Field(0.1, ge=0.0)


class InferredData(_Value):
    back_links: tuple[BackLink, ...] = ()
    ranks: Ranks = Field(default_factory=Ranks)
    domain_name: str = ""


class PageRecord(_Value):
    """One crawled URL as stored in the index.

    Records are values: every transition returns a new record and leaves
    the original untouched, so a record can be shared between tasks.
    """

    schema_version: int = SCHEMA_VERSION
    address: Address
    metadata: Metadata = Field(default_factory=Metadata)
    body: Body = Field(default_factory=Body)
    inferred_data: InferredData = Field(default_factory=InferredData)
    crawler_status: CrawlerStatus = CrawlerStatus.NOT_CRAWLED
    crawler_timestamp: int = Field(default_factory=now_ms)

    # -------------------------------------------------------
    # construction
    # -------------------------------------------------------

    @classmethod
    def for_url(cls, url: str, *, timestamp: Optional[int] = None) -> "PageRecord":
        """Bare record for a URL that has not been crawled yet."""
        key = _identity_url(url)
        domain = get_domain(key)
        return cls(
            address=Address(url=key, url_as_text=tuple(split_url_to_words(key)), host_name=domain),
            inferred_data=InferredData(domain_name=domain),
            crawler_status=CrawlerStatus.NOT_CRAWLED,
            crawler_timestamp=timestamp if timestamp is not None else now_ms(),
        )

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "PageRecord":
        return cls.model_validate(document)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    # -------------------------------------------------------
    # transitions
    # -------------------------------------------------------

    @property
    def url(self) -> str:
        return self.address.url

    def with_status(self, status: CrawlerStatus) -> "PageRecord":
        return self.model_copy(update={"crawler_status": CrawlerStatus(status)})

    def with_body(self, body: Body, metadata: Optional[Metadata] = None) -> "PageRecord":
        update: dict[str, Any] = {"body": body, "crawler_status": CrawlerStatus.CRAWLED}
        if metadata is not None:
            update["metadata"] = metadata
        return self.model_copy(update=update)

    def with_backlink(self, backlink: BackLink) -> "PageRecord":
        """Add ``backlink``; an existing entry from the same source is replaced."""
        merged = list(self.inferred_data.back_links)
        for position, existing in enumerate(merged):
            if existing.source == backlink.source:
                merged[position] = backlink
                break
        else:
            merged.append(backlink)

        inferred = self.inferred_data.model_copy(update={"back_links": tuple(merged)})
        return self.model_copy(update={"inferred_data": inferred})

    def with_domain(self) -> "PageRecord":
        inferred = self.inferred_data.model_copy(update={"domain_name": get_domain(self.address.url)})
        return self.model_copy(update={"inferred_data": inferred})

    def with_ranks(self, *, pagerank: Optional[float] = None, smart_rank: Optional[float] = None) -> "PageRecord":
        current = self.inferred_data.ranks
        ranks = Ranks(
            pagerank=current.pagerank if pagerank is None else pagerank,
            smart_rank=current.smart_rank if smart_rank is None else smart_rank,
        )
        inferred = self.inferred_data.model_copy(update={"ranks": ranks})
        return self.model_copy(update={"inferred_data": inferred})

    def stamped(self, timestamp: Optional[int] = None) -> "PageRecord":
        """Stamp the write time, never moving the timestamp backwards."""
        stamp = timestamp if timestamp is not None else now_ms()
        return self.model_copy(update={"crawler_timestamp": max(stamp, self.crawler_timestamp)})

    def has_outbound_links(self) -> bool:
        links = self.body.links
        return bool(links.internal or links.external)
