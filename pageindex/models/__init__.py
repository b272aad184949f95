from .page_record import (
    Address,
    BackLink,
    Body,
    BodyLinks,
    CrawlerStatus,
    ForwardLink,
    Headings,
    InferredData,
    Metadata,
    PageRecord,
    Ranks,
    SCHEMA_VERSION,
)

__all__ = [
    "Address",
    "BackLink",
    "Body",
    "BodyLinks",
    "CrawlerStatus",
    "ForwardLink",
    "Headings",
    "InferredData",
    "Metadata",
    "PageRecord",
    "Ranks",
    "SCHEMA_VERSION",
]
