import pytest

from pageindex.storage.errors import ConflictError, QueryError
from pageindex.storage.schema_builder import (
    GENERATIONS_COLLECTION,
    SchemaBuilder,
    build_schema,
    field_paths,
    index_models,
    page_mapping,
    to_validator,
)
from tests.fakes import FakeDatabase


def test_field_paths_classify_text_keyword_rank_and_structure():
    paths = field_paths(page_mapping())

    assert paths["address.url"] == "keyword"
    assert paths["address.urlAsText"] == "text"
    assert paths["metadata.title"] == "text"
    assert paths["metadata.tags"] == "keyword"
    assert paths["crawlerStatus"] == "keyword"
    assert paths["body.headings.h3"] == "text"
    assert paths["body.links.internal"] == "nested"
    assert paths["body.links.external.href"] == "keyword"
    assert paths["inferredData.backLinks.source"] == "keyword"
    assert paths["inferredData.ranks.pagerank"] == "rank_feature"
    assert paths["inferredData.ranks.smartRank"] == "rank_feature"
    assert paths["crawlerTimestamp"] == "long"
    assert paths["address"] == "object"


def test_keyword_fields_carry_a_token_length_limit():
    mapping = page_mapping()
    address = mapping["properties"]["address"]["properties"]

    assert address["url"]["ignore_above"] == 2048
    assert mapping["properties"]["metadata"]["properties"]["tags"]["ignore_above"] == 256


def test_build_schema_sets_generation_settings():
    schema = build_schema(number_of_shards=3, number_of_replicas=1)

    assert schema["settings"] == {"numberOfShards": 3, "numberOfReplicas": 1}
    assert schema["mappings"] == page_mapping()

    with pytest.raises(QueryError):
        build_schema(number_of_shards=0)


def test_validator_requires_url_and_non_negative_smart_rank():
    schema = to_validator(page_mapping())["$jsonSchema"]

    assert schema["required"] == ["address"]
    assert schema["properties"]["address"]["required"] == ["url"]
    assert schema["properties"]["address"]["properties"]["url"]["minLength"] == 1
    ranks = schema["properties"]["inferredData"]["properties"]["ranks"]["properties"]
    assert ranks["smartRank"]["minimum"] == 0
    # pagerank may go negative
    assert "minimum" not in ranks["pagerank"]
    assert "Crawled" in schema["properties"]["crawlerStatus"]["enum"]


def test_index_models_cover_exact_rank_and_full_text_access():
    documents = {model.document["name"]: model.document for model in index_models(page_mapping())}

    assert list(documents["address.url_exact"]["key"].items()) == [("address.url", 1)]
    rank_key = documents["status_inferredData.ranks.pagerank_rank"]["key"]
    assert list(rank_key.items()) == [("crawlerStatus", 1), ("inferredData.ranks.pagerank", -1)]

    full_text = documents["full_text"]
    assert full_text["weights"]["metadata.title"] == 10
    assert full_text["weights"]["body.article"] == 1
    assert "body.links.internal.text" in full_text["weights"]
    assert "address.url" not in full_text["weights"]


@pytest.mark.anyio
async def test_create_generation_creates_collection_and_records_settings():
    database = FakeDatabase("test")
    builder = SchemaBuilder(database)

    await builder.create_generation("pages-v2", number_of_shards=2)

    assert await builder.generation_exists("pages-v2")
    assert database["pages-v2"].validator == to_validator(page_mapping())
    assert {index["name"] for index in database["pages-v2"].indexes} >= {"address.url_exact", "full_text"}
    assert await builder.generation_settings("pages-v2") == {"numberOfShards": 2, "numberOfReplicas": 0}
    assert "pages-v2" in database[GENERATIONS_COLLECTION].documents


@pytest.mark.anyio
async def test_create_existing_generation_is_a_conflict():
    builder = SchemaBuilder(FakeDatabase("test"))
    await builder.create_generation("pages-v1")

    with pytest.raises(ConflictError):
        await builder.create_generation("pages-v1")


@pytest.mark.anyio
async def test_reserved_generation_names_are_rejected():
    builder = SchemaBuilder(FakeDatabase("test"))

    with pytest.raises(QueryError):
        await builder.create_generation("_aliases")


@pytest.mark.anyio
async def test_drop_generation_removes_collection_and_settings():
    builder = SchemaBuilder(FakeDatabase("test"))
    await builder.create_generation("pages-v1")

    await builder.drop_generation("pages-v1")

    assert not await builder.generation_exists("pages-v1")
    assert await builder.generation_settings("pages-v1") is None
