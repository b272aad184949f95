import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pageindex.service import PageIndexService
from pageindex.storage.document_store import DocumentStore
from tests.fakes import FakeClient


@pytest.fixture
def anyio_backend():
    # motor only runs on asyncio
    return "asyncio"


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep connection settings from the host out of the tests."""

    for key in [
        "MONGO_URL",
        "MONGO_URI",
        "MONGO_DB",
        "INDEX_ALIAS",
        "PAGEINDEX_CONFIG",
        "PAGE_SIZE",
        "NUMBER_OF_SHARDS",
        "NUMBER_OF_REPLICAS",
        "MERGE_CONCURRENCY",
        "LOG_LEVEL",
    ]:
        monkeypatch.delenv(key, raising=False)

    yield

    for key in list(os.environ.keys()):
        if key.startswith("TEST_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
async def store(fake_client):
    """A connected store whose alias is backed by one fresh generation."""
    store = DocumentStore("mongodb://fake:27017", alias="pages", db_name="test", client=fake_client)
    await store.connect()
    await store.schema.create_generation("pages-v1")
    await store.aliases.bind("pages", "pages-v1")
    yield store
    await store.close()


@pytest.fixture
def service(store):
    return PageIndexService(store, page_size=3, merge_concurrency=4)
