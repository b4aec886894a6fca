"""
Snowflake database connection management.

Provides connection factory and context manager for Snowflake operations.
Includes mock mode with in-memory storage for local development.

Using the repository pattern means most code never touches this module
directly - it goes through MigrationRepository which handles the
translation between domain models and database rows.
"""

import base64
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from .repositories.migrations import SnowflakeConfig, SnowflakeConnection

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


def _load_private_key(pem_bytes: bytes) -> bytes:
    """
    Convert a PEM private key into the DER bytes Snowflake expects.

    Snowflake's key-pair auth takes the key itself, not a file path.
    """
    from cryptography.hazmat.primitives import serialization

    private_key = serialization.load_pem_private_key(pem_bytes, password=None)

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _read_private_key(config: SnowflakeConfig) -> Optional[bytes]:
    # base64 form is for hosts where mounting a key file is awkward
    if config.private_key_base64:
        return _load_private_key(base64.b64decode(config.private_key_base64))
    if config.private_key_path:
        with open(config.private_key_path, 'rb') as key_file:
            return _load_private_key(key_file.read())
    return None


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Supports both password and key-pair authentication:
    - If private_key_base64 or private_key_path is set, uses key-pair auth
    - Otherwise, uses password auth

    Usage:
        with get_snowflake_connection(config) as conn:
            repo = MigrationRepository(conn)
    """
    import snowflake.connector

    conn = None
    try:
        connect_params = {
            'account': config.account,
            'user': config.user,
            'database': config.database,
            'schema': config.schema,
            'warehouse': config.warehouse,
            'role': config.role,
            'client_session_keep_alive': True,
        }

        private_key = _read_private_key(config)
        if private_key:
            logger.info("Using key-pair authentication for Snowflake")
            connect_params['private_key'] = private_key
        elif config.password:
            logger.info("Using password authentication for Snowflake")
            connect_params['password'] = config.password
        else:
            raise SnowflakeConnectionError(
                "Either password or a private key must be provided"
            )

        try:
            conn = snowflake.connector.connect(**connect_params)
        except snowflake.connector.errors.DatabaseError as e:
            logger.error(
                "Snowflake connection failed",
                extra={"error": str(e), "account": config.account}
            )
            raise SnowflakeConnectionError(f"Database connection failed: {e}")

        logger.debug(
            "Established Snowflake connection",
            extra={
                "account": config.account,
                "database": config.database,
                "schema": config.schema,
            }
        )

        yield conn

    finally:
        if conn:
            try:
                conn.close()
                logger.debug("Closed Snowflake connection")
            except Exception as e:
                logger.warning(
                    "Error closing Snowflake connection",
                    extra={"error": str(e)}
                )


# ---------------------------------------------------------------------------
# Mock Connection for Local Development
# ---------------------------------------------------------------------------

class MockSnowflakeCursor:
    """
    Mock Snowflake cursor for testing.

    Implements just enough of the cursor interface to support
    MigrationRepository without a real database. Statements are
    recognised by pattern, so this only understands the SQL that
    repository issues.
    """

    def __init__(self, storage: dict) -> None:
        self._storage = storage
        self._results: list = []
        self._rowcount: int = 0

    def execute(self, query: str, params: Optional[tuple] = None) -> 'MockSnowflakeCursor':
        logger.debug(
            "Mock cursor execute",
            extra={"query": query[:100], "params": params}
        )

        query_upper = " ".join(query.upper().split())
        params = params or ()
        self._results = []
        self._rowcount = 0

        if query_upper.startswith('MERGE INTO VIDEO_MIGRATIONS'):
            self._merge_migration(params)
        elif query_upper.startswith('UPDATE VIDEOS'):
            self._update_video(params)
        elif query_upper.startswith('SELECT'):
            self._handle_select(query_upper, params)

        return self

    def _merge_migration(self, params: tuple) -> None:
        video_id = str(params[0])
        (original_video_url, original_thumbnail_url, new_video_url,
         new_thumbnail_url, status, error_message, completed_at) = params[1:8]

        self._storage['video_migrations'][video_id] = {
            'video_id': video_id,
            'original_video_url': original_video_url,
            'original_thumbnail_url': original_thumbnail_url,
            'new_video_url': new_video_url,
            'new_thumbnail_url': new_thumbnail_url,
            'status': status,
            'error_message': error_message,
            'completed_at': completed_at,
        }
        self._rowcount = 1

    def _update_video(self, params: tuple) -> None:
        video_url, thumbnail_url, video_id = params
        video = self._storage['videos'].get(str(video_id))
        if video is None:
            return
        if video_url is not None:
            video['video_url'] = video_url
        if thumbnail_url is not None:
            video['thumbnail_url'] = thumbnail_url
        self._rowcount = 1

    def _handle_select(self, query: str, params: tuple) -> None:
        videos = self._storage['videos']
        migrations = self._storage['video_migrations']

        if 'LEFT JOIN VIDEO_MIGRATIONS' in query:
            eligible = set(params)
            rows = [
                video for video in videos.values()
                if video['video_id'] not in migrations
                or migrations[video['video_id']]['status'] in eligible
            ]
            rows.sort(key=lambda video: video['created_at'])
            self._results = [_video_row(video) for video in rows]

        elif 'GROUP BY STATUS' in query:
            counts: dict[str, int] = {}
            for record in migrations.values():
                counts[record['status']] = counts.get(record['status'], 0) + 1
            self._results = list(counts.items())

        elif 'COUNT(*) FROM VIDEOS' in query:
            if params:
                prefix = _unescape_like(params[0])
                matching = [
                    video for video in videos.values()
                    if (video['video_url'] or '').startswith(prefix)
                ]
                self._results = [(len(matching),)]
            else:
                self._results = [(len(videos),)]

        elif 'FROM VIDEO_MIGRATIONS' in query:
            record = migrations.get(str(params[0]))
            if record:
                self._results = [(
                    record['video_id'],
                    record['original_video_url'],
                    record['original_thumbnail_url'],
                    record['new_video_url'],
                    record['new_thumbnail_url'],
                    record['status'],
                    record['error_message'],
                    record['completed_at'],
                )]

        elif 'FROM VIDEOS' in query:
            video = videos.get(str(params[0]))
            if video:
                self._results = [_video_row(video)]

    def fetchone(self):
        if not self._results:
            return None
        return self._results[0]

    def fetchall(self) -> list:
        return self._results

    def close(self) -> None:
        pass

    @property
    def rowcount(self) -> int:
        return self._rowcount


def _unescape_like(pattern: str) -> str:
    # only trailing-% prefix patterns are issued
    prefix = pattern[:-1] if pattern.endswith("%") else pattern
    return prefix.replace("\\_", "_").replace("\\%", "%").replace("\\\\", "\\")


def _video_row(video: dict) -> tuple:
    return (
        video['video_id'],
        video['user_id'],
        video['title'],
        video['video_url'],
        video['thumbnail_url'],
    )


class MockSnowflakeConnection:
    """
    Mock Snowflake connection for local development.

    Stores data in memory using a simple dictionary structure.
    This enables running the full API and CLI without a real database.

    Not suitable for production, but perfect for:
    - Local development
    - Unit tests
    - CI/CD environments
    """

    def __init__(self) -> None:
        # In-memory storage: {table_name: {id: row_dict}}
        self._storage: dict[str, dict[str, dict]] = {
            'videos': {},
            'video_migrations': {},
        }

        logger.info("Initialized mock Snowflake connection (in-memory)")

    def cursor(self) -> MockSnowflakeCursor:
        return MockSnowflakeCursor(self._storage)

    def commit(self) -> None:
        logger.debug("Mock connection commit")

    def rollback(self) -> None:
        logger.debug("Mock connection rollback")

    def close(self) -> None:
        logger.debug("Mock connection close")

    # Helper methods for testing
    def _add_video(
        self,
        video_id: str,
        user_id: str,
        video_url: str,
        thumbnail_url: Optional[str] = None,
        title: str = "",
        created_at: Optional[datetime] = None,
    ) -> None:
        """Add a video row to mock storage (for test setup and seeding)."""
        self._storage['videos'][video_id] = {
            'video_id': video_id,
            'user_id': user_id,
            'title': title,
            'video_url': video_url,
            'thumbnail_url': thumbnail_url,
            'created_at': created_at or datetime.now(timezone.utc),
        }

    def _get_video(self, video_id: str) -> Optional[dict]:
        return self._storage['videos'].get(video_id)

    def _get_migration(self, video_id: str) -> Optional[dict]:
        return self._storage['video_migrations'].get(video_id)


# Shared instance so mock data survives across requests
_shared_mock_connection: Optional[MockSnowflakeConnection] = None


def get_shared_mock_connection() -> MockSnowflakeConnection:
    global _shared_mock_connection
    if _shared_mock_connection is None:
        _shared_mock_connection = MockSnowflakeConnection()
    return _shared_mock_connection


@contextmanager
def create_snowflake_connection(
    config: Optional[SnowflakeConfig],
    mock_mode: bool = False,
) -> Generator[SnowflakeConnection, None, None]:
    """
    Open a connection, or hand out the shared in-memory one in mock mode.

    Args:
        config: Snowflake configuration (ignored in mock mode)
        mock_mode: If True, use MockSnowflakeConnection
    """
    if mock_mode:
        yield get_shared_mock_connection()
        return

    if config is None:
        raise SnowflakeConnectionError("Snowflake configuration is required")

    with get_snowflake_connection(config) as conn:
        yield conn
