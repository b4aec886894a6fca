"""
Shared fixtures: an in-memory object store, a client signed against it,
and a mock Snowflake connection. Nothing here touches the network.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import pytest

from r2migrate.core.migration.uploader import ChunkedUploader
from r2migrate.infrastructure.legacy.client import LegacySourceClient
from r2migrate.infrastructure.snowflake.client import MockSnowflakeConnection
from r2migrate.infrastructure.snowflake.repositories.migrations import MigrationRepository
from r2migrate.infrastructure.storage.client import ObjectStoreClient, StorageConfig
from r2migrate.infrastructure.storage.mock import MockObjectStore

MIB = 1024 * 1024
BUCKET = "media"
ENDPOINT = "https://acct.r2.cloudflarestorage.com"
PUBLIC_URL = "https://pub.example.com"
FIXED_NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_payload(size: int) -> bytes:
    """Bytes whose content differs per offset, so misordered parts show up."""
    pattern = bytes(range(251))
    return (pattern * (size // len(pattern) + 1))[:size]


def make_storage_config(**overrides) -> StorageConfig:
    values = dict(
        access_key_id="test-access-key",
        secret_access_key="test-secret-key",
        bucket_name=BUCKET,
        endpoint_url=ENDPOINT,
        public_url=PUBLIC_URL,
    )
    values.update(overrides)
    return StorageConfig(**values)


def make_source_client(
    routes: dict[str, httpx.Response | Callable[[httpx.Request], httpx.Response]],
) -> LegacySourceClient:
    """LegacySourceClient over a MockTransport; unknown URLs answer 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            return route(request)
        return route

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LegacySourceClient(http_client, retry_delay_seconds=0)


@pytest.fixture
def mock_store() -> MockObjectStore:
    return MockObjectStore()


@pytest.fixture
def store_client(mock_store: MockObjectStore) -> ObjectStoreClient:
    http_client = httpx.AsyncClient(transport=mock_store.transport())
    return ObjectStoreClient(
        make_storage_config(),
        http_client=http_client,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def uploader(store_client: ObjectStoreClient) -> ChunkedUploader:
    return ChunkedUploader(store_client, retry_delay_seconds=0)


@pytest.fixture
def snowflake() -> MockSnowflakeConnection:
    return MockSnowflakeConnection()


@pytest.fixture
def repository(snowflake: MockSnowflakeConnection) -> MigrationRepository:
    return MigrationRepository(snowflake)


def stored(mock_store: MockObjectStore, key: str) -> Optional[bytes]:
    obj = mock_store.get_object(BUCKET, key)
    return obj.data if obj else None
