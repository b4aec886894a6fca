"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be mocked for testing
- Configuration is centralized
- Resource lifecycle (connections, clients) is managed properly

Each dependency is a function that FastAPI calls when needed.
"""

import logging
from typing import Annotated, AsyncGenerator, Generator, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config import Settings, get_settings
from ..core.errors import AuthorizationError
from ..core.migration.coordinator import MigrationCoordinator
from ..core.migration.uploader import ChunkedUploader
from ..infrastructure.legacy.client import LegacySourceClient
from ..infrastructure.snowflake.client import create_snowflake_connection
from ..infrastructure.snowflake.repositories.migrations import (
    MigrationRepository,
    SnowflakeConfig,
)
from ..infrastructure.storage.client import (
    ObjectStoreClient,
    StorageConfig,
    create_object_store_client,
)

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

MOCK_R2_ENDPOINT = "https://mock-account.r2.cloudflarestorage.com"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_operator(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate that the caller may run migrations.

    Raises 401 if the key is missing or unknown, and AuthorizationError
    (mapped to 403) if the key is valid but not an admin key. Runs before
    any signing or network work.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8]}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    if api_key not in settings.admin_api_keys_list:
        logger.warning(
            "Non-admin key attempted migration",
            extra={"key_prefix": api_key[:8]}
        )
        raise AuthorizationError("Admin access required")

    return api_key


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------

def build_storage_config(settings: Settings) -> StorageConfig:
    """
    Storage configuration from settings.

    In mock mode missing credentials get placeholders, since the
    in-memory store only checks that requests are signed.
    """
    if settings.r2_mock_mode:
        endpoint = settings.r2_endpoint or MOCK_R2_ENDPOINT
        return StorageConfig(
            access_key_id=settings.r2_access_key_id or "mock-access-key",
            secret_access_key=settings.r2_secret_access_key or "mock-secret-key",
            bucket_name=settings.r2_bucket_name,
            endpoint_url=endpoint,
            public_url=settings.r2_public_url or f"{endpoint}/{settings.r2_bucket_name}",
            presign_expires_seconds=settings.r2_presign_expires_seconds,
        )

    return StorageConfig(
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        bucket_name=settings.r2_bucket_name,
        endpoint_url=settings.r2_endpoint,
        public_url=settings.r2_public_url,
        presign_expires_seconds=settings.r2_presign_expires_seconds,
    )


def build_snowflake_config(settings: Settings) -> SnowflakeConfig:
    return SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        private_key_base64=settings.snowflake_private_key_base64,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
    )


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_migration_repository(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[MigrationRepository, None, None]:
    """
    Provide MigrationRepository with database connection.

    This is a generator function (yields instead of returns) because
    the connection must be closed after the request. In mock mode the
    same in-memory connection is reused so data persists across requests.
    """
    config = None if settings.snowflake_mock_mode else build_snowflake_config(settings)

    with create_snowflake_connection(config, mock_mode=settings.snowflake_mock_mode) as conn:
        yield MigrationRepository(conn)


class ObjectStoreProvider:
    """
    Opens the object store client on first use.

    Actions that only touch the database never ask for it, so they keep
    working when object store credentials are missing.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client: Optional[ObjectStoreClient] = None

    @property
    def client(self) -> ObjectStoreClient:
        """
        The request's object store client.

        Raises ConfigurationError (mapped to 500) when credentials are
        missing. In mock mode every client talks to the same in-memory store.
        """
        if self._client is None:
            self._client = create_object_store_client(
                build_storage_config(self._settings),
                mock_mode=self._settings.r2_mock_mode,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def get_object_store_provider(
    settings: Annotated[Settings, Depends(get_settings)],
) -> AsyncGenerator[ObjectStoreProvider, None]:
    """Provide a lazily opened object store client, closed after the request."""
    provider = ObjectStoreProvider(settings)
    try:
        yield provider
    finally:
        await provider.aclose()


async def get_source_client() -> AsyncGenerator[LegacySourceClient, None]:
    """Provide a client for downloading assets from the legacy host."""
    client = LegacySourceClient()
    try:
        yield client
    finally:
        await client.aclose()


def build_coordinator(
    settings: Settings,
    store: ObjectStoreClient,
    repository: MigrationRepository,
    source: LegacySourceClient,
) -> MigrationCoordinator:
    return MigrationCoordinator(
        ChunkedUploader(store),
        repository,
        source,
        store.public_url(""),
        item_delay_seconds=settings.migration_item_delay_seconds,
        max_outcomes=settings.migration_max_outcomes,
        skip_source_hosts=settings.skip_source_hosts_list,
    )


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
Operator = Annotated[str, Depends(verify_operator)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
MigrationRepositoryDep = Annotated[MigrationRepository, Depends(get_migration_repository)]
ObjectStoreProviderDep = Annotated[ObjectStoreProvider, Depends(get_object_store_provider)]
SourceClientDep = Annotated[LegacySourceClient, Depends(get_source_client)]
