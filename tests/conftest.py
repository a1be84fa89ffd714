"""Shared pytest fixtures for r2broker tests.

Remote calls never leave the process: the object store client gets an
``AsyncMock`` injected on ``client._client`` (bypassing session creation),
and SQLite stores use ``:memory:`` databases or files under ``tmp_path``.
"""

import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError

from r2broker.cache.folders import FolderTreeCache
from r2broker.cache.listing import FileListingCache
from r2broker.cache.manager import FileCacheManager
from r2broker.cache.snapshot import SQLiteSnapshotStore
from r2broker.config import StoreConfig
from r2broker.credentials import Credentials
from r2broker.storage.client import ObjectStoreClient

ACCESS_KEY = "AKIAR2BROKERTEST"
SECRET_KEY = "r2broker-test-secret-key"


class FakeClock:
    """Settable clock for TTL and window tests."""

    def __init__(self, now: float | None = None) -> None:
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def client_error(code: str, message: str = "error") -> ClientError:
    """Create a botocore ClientError with the given error code."""
    return ClientError(
        {"Error": {"Code": code, "Message": message}},
        "TestOperation",
    )


def listing_page(keys, truncated=False, token=None, size=10):
    """Build a list_objects_v2 response for the given keys."""
    page = {
        "Contents": [
            {
                "Key": k,
                "Size": 0 if k.endswith("/") else size,
                "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
                "ETag": '"abc"',
            }
            for k in keys
        ],
        "IsTruncated": truncated,
    }
    if token:
        page["NextContinuationToken"] = token
    return page


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(access_key=ACCESS_KEY, secret_key=SECRET_KEY)


@pytest.fixture
def store_config() -> StoreConfig:
    return StoreConfig(
        endpoint="http://localhost:9000",
        bucket_name="downloads",
        region="auto",
        use_path_style=True,
    )


@pytest.fixture
def listing_cache(tmp_path, clock) -> FileListingCache:
    return FileListingCache(tmp_path / "cache", default_ttl=300, clock=clock)


@pytest.fixture
def store_client(store_config, credentials, listing_cache) -> ObjectStoreClient:
    """ObjectStoreClient with a mock aiobotocore client (skip init)."""
    client = ObjectStoreClient(store_config, credentials, listing_cache)
    client._client = AsyncMock()
    client._client_ctx = AsyncMock()
    return client


@pytest.fixture
async def snapshot(clock):
    store = SQLiteSnapshotStore(":memory:", clock=clock)
    await store.init_db()
    yield store
    await store.close()


@pytest.fixture
def manager(store_client, snapshot, tmp_path, clock) -> FileCacheManager:
    return FileCacheManager(
        store_client,
        snapshot,
        FolderTreeCache(tmp_path / "cache", ttl=3600, clock=clock),
        lifetime=300,
        max_keys=10000,
        search_limit=50,
        clock=clock,
    )
