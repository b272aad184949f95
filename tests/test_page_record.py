import pytest
from pydantic import ValidationError

from pageindex.models.page_record import (
    MAX_KEYWORD_LENGTH,
    SCHEMA_VERSION,
    Address,
    BackLink,
    Body,
    BodyLinks,
    CrawlerStatus,
    ForwardLink,
    Metadata,
    PageRecord,
)


def test_for_url_builds_bare_not_crawled_record():
    record = PageRecord.for_url("https://Example.com/a-b/c/", timestamp=1000)

    assert record.url == "https://example.com/a-b/c"
    assert record.address.url_as_text == ("https", "example", "com", "a", "b", "c")
    assert record.address.host_name == "example.com"
    assert record.inferred_data.domain_name == "example.com"
    assert record.crawler_status is CrawlerStatus.NOT_CRAWLED
    assert record.crawler_timestamp == 1000
    assert record.inferred_data.ranks.pagerank == 0.0


def test_document_uses_stored_field_names():
    document = PageRecord.for_url("https://example.com/").to_document()

    assert document["schemaVersion"] == SCHEMA_VERSION
    assert document["address"]["urlAsText"] == ["https", "example", "com"]
    assert document["crawlerStatus"] == "NotCrawled"
    assert "openGraphImgURL" in document["metadata"]
    assert "type" in document["metadata"]
    assert document["inferredData"]["ranks"]["smartRank"] == 0.1
    assert document["inferredData"]["backLinks"] == []


def test_from_document_reads_older_documents_with_defaults():
    record = PageRecord.from_document(
        {"_id": "abc", "address": {"url": "https://example.com/old"}, "crawlerStatus": "Crawled"}
    )

    assert record.crawler_status is CrawlerStatus.CRAWLED
    assert record.body.links.internal == ()
    assert record.schema_version == SCHEMA_VERSION


def test_record_requires_url():
    with pytest.raises(ValidationError):
        PageRecord.from_document({"address": {"url": ""}})
    with pytest.raises(ValidationError):
        PageRecord.from_document({"metadata": {"title": "no address"}})


def test_smart_rank_cannot_be_negative():
    record = PageRecord.for_url("https://example.com/")
    with pytest.raises(ValidationError):
        record.with_ranks(smart_rank=-0.5)

    ranked = record.with_ranks(pagerank=-1.0, smart_rank=2.0)
    assert ranked.inferred_data.ranks.pagerank == -1.0
    assert ranked.inferred_data.ranks.smart_rank == 2.0


def test_records_are_immutable():
    record = PageRecord.for_url("https://example.com/")
    with pytest.raises(ValidationError):
        record.crawler_status = CrawlerStatus.CRAWLED


def test_with_backlink_replaces_entry_from_same_source():
    record = PageRecord.for_url("https://example.com/target")

    merged = (
        record.with_backlink(BackLink(text="first", source="https://a.com/"))
        .with_backlink(BackLink(text="other", source="https://b.com/"))
        .with_backlink(BackLink(text="second", source="https://a.com/"))
    )

    assert [(b.source, b.text) for b in merged.inferred_data.back_links] == [
        ("https://a.com/", "second"),
        ("https://b.com/", "other"),
    ]
    # the original value is untouched
    assert record.inferred_data.back_links == ()


def test_stamped_never_moves_backwards():
    record = PageRecord.for_url("https://example.com/", timestamp=5000)

    assert record.stamped(7000).crawler_timestamp == 7000
    assert record.stamped(3000).crawler_timestamp == 5000


def test_status_transitions_return_new_values():
    record = PageRecord.for_url("https://example.com/")
    body = Body(links=BodyLinks(external=(ForwardLink(text="x", href="https://other.com/"),)))

    crawled = record.with_body(body, Metadata(title="Example"))
    awaiting = crawled.with_status(CrawlerStatus.AWAITING_PAGERANK)

    assert crawled.crawler_status is CrawlerStatus.CRAWLED
    assert crawled.metadata.title == "Example"
    assert crawled.has_outbound_links()
    assert awaiting.crawler_status is CrawlerStatus.AWAITING_PAGERANK
    assert record.crawler_status is CrawlerStatus.NOT_CRAWLED
    assert not record.has_outbound_links()


def test_oversized_exact_match_tokens_are_dropped():
    long_tag = "x" * (MAX_KEYWORD_LENGTH + 1)
    metadata = Metadata(tags=("news", long_tag), content_type=long_tag)

    assert metadata.tags == ("news",)
    assert metadata.content_type == ""


def test_urls_are_stored_as_normalized_keys():
    record = PageRecord(address=Address(url="  https://Example.com/a/#frag "))
    backlink = BackLink(text="x", source="HTTPS://Source.com/page/?utm_source=feed")

    assert record.url == "https://example.com/a"
    assert backlink.source == "https://source.com/page"
    assert PageRecord.from_document({"address": {"url": "https://EXAMPLE.com/b/"}}).url == "https://example.com/b"


def test_non_http_urls_are_kept_stripped():
    assert Address(url=" urn:isbn:123 ").url == "urn:isbn:123"
    with pytest.raises(ValidationError):
        Address(url="   ")
