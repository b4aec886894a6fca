"""
Snowflake repository for migration records.

Two tables are involved:
- videos: owned by the main application. We read the backlog from it
  and rewrite its URLs once an item has moved.
- video_migrations: one row per video, upserted by video_id. This is
  the single source of truth for "already migrated"; we never guess
  from the shape of a URL.

The application code never writes SQL directly; it asks the repository
for what it needs in domain terms.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol
from urllib.parse import urlsplit

from r2migrate.core.migration.models import (
    MigrationRecord,
    MigrationStatus,
    PendingAsset,
)

logger = logging.getLogger(__name__)


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a mock without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "VIDEOHUB"
    schema: str = "MEDIA"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


_RECORD_COLUMNS = """
    video_id,
    original_video_url,
    original_thumbnail_url,
    new_video_url,
    new_thumbnail_url,
    status,
    error_message,
    completed_at
"""


class MigrationRepository:
    """
    Repository for backlog items and their migration records.

    Writes are upserts keyed by video_id, so concurrent runs settle on
    last-write-wins without any locking.
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    # -----------------------------------------------------------------------
    # Backlog (videos table)
    # -----------------------------------------------------------------------

    def get_asset(self, item_id: str) -> Optional[PendingAsset]:
        """Load one video as a migration candidate."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT video_id, user_id, title, video_url, thumbnail_url
                FROM videos
                WHERE video_id = %s
            """, (item_id,))
            row = cursor.fetchone()
            return self._build_asset(row) if row else None
        finally:
            cursor.close()

    def list_pending_assets(
        self,
        limit: Optional[int] = None,
        skip_source_hosts: Iterable[str] = (),
    ) -> list[PendingAsset]:
        """
        List videos whose record is missing, pending or failed.

        Ordered oldest first, which is the order a batch processes them.
        Videos hosted on skip_source_hosts (e.g. YouTube embeds) are not
        files we own and are left out.
        """
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT v.video_id, v.user_id, v.title, v.video_url, v.thumbnail_url
                FROM videos v
                LEFT JOIN video_migrations m ON m.video_id = v.video_id
                WHERE m.status IS NULL OR m.status IN (%s, %s)
                ORDER BY v.created_at ASC
            """, (MigrationStatus.PENDING.value, MigrationStatus.FAILED.value))
            rows = cursor.fetchall()
        finally:
            cursor.close()

        skip = tuple(host.lower() for host in skip_source_hosts if host)
        assets = [
            self._build_asset(row) for row in rows
            if not _is_hosted_on(row[3], skip)
        ]
        if limit is not None:
            assets = assets[:limit]
        return assets

    def update_asset_urls(
        self,
        item_id: str,
        video_url: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
    ) -> None:
        """Point a video at its new location. None leaves a URL unchanged."""
        if video_url is None and thumbnail_url is None:
            return

        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                UPDATE videos
                SET video_url = COALESCE(%s, video_url),
                    thumbnail_url = COALESCE(%s, thumbnail_url)
                WHERE video_id = %s
            """, (video_url, thumbnail_url, item_id))
            self._conn.commit()
        finally:
            cursor.close()

    def count_assets(self, url_prefix: Optional[str] = None) -> int:
        """Count videos, optionally only those whose URL starts with url_prefix."""
        cursor = self._conn.cursor()
        try:
            if url_prefix:
                cursor.execute(
                    "SELECT COUNT(*) FROM videos WHERE video_url LIKE %s",
                    (_like_prefix(url_prefix),)
                )
            else:
                cursor.execute("SELECT COUNT(*) FROM videos")
            row = cursor.fetchone()
            return int(row[0]) if row else 0
        finally:
            cursor.close()

    # -----------------------------------------------------------------------
    # Migration records
    # -----------------------------------------------------------------------

    def get_record(self, item_id: str) -> Optional[MigrationRecord]:
        cursor = self._conn.cursor()
        try:
            cursor.execute(f"""
                SELECT {_RECORD_COLUMNS}
                FROM video_migrations
                WHERE video_id = %s
            """, (item_id,))
            row = cursor.fetchone()
            return self._build_record(row) if row else None
        finally:
            cursor.close()

    def save_record(self, record: MigrationRecord) -> None:
        """
        Upsert a migration record.

        Idempotent: saving the same record twice leaves one row.
        """
        values = (
            record.original_payload_url,
            record.original_companion_url,
            record.new_payload_url,
            record.new_companion_url,
            record.status.value,
            record.error_message,
            record.completed_at,
        )

        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                MERGE INTO video_migrations AS target
                USING (SELECT %s AS video_id) AS source
                ON target.video_id = source.video_id
                WHEN MATCHED THEN UPDATE SET
                    original_video_url = %s,
                    original_thumbnail_url = %s,
                    new_video_url = %s,
                    new_thumbnail_url = %s,
                    status = %s,
                    error_message = %s,
                    completed_at = %s,
                    updated_at = CURRENT_TIMESTAMP()
                WHEN NOT MATCHED THEN INSERT (
                    video_id, original_video_url, original_thumbnail_url,
                    new_video_url, new_thumbnail_url, status,
                    error_message, completed_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (record.item_id, *values, record.item_id, *values))
            self._conn.commit()

            logger.debug(
                "Saved migration record",
                extra={"item_id": record.item_id, "status": record.status.value}
            )
        except Exception as e:
            logger.error(
                "Failed to save migration record",
                extra={"item_id": record.item_id, "error": str(e)}
            )
            raise
        finally:
            cursor.close()

    def status_counts(self) -> dict[str, int]:
        """Number of records per status, with every status present."""
        counts = {status.value: 0 for status in MigrationStatus}

        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT status, COUNT(*)
                FROM video_migrations
                GROUP BY status
            """)
            for status, count in cursor.fetchall():
                if status in counts:
                    counts[status] = int(count)
        finally:
            cursor.close()

        return counts

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    @staticmethod
    def _build_asset(row) -> PendingAsset:
        return PendingAsset(
            item_id=str(row[0]),
            owner_id=str(row[1]),
            title=row[2] or "",
            source_payload_url=row[3],
            source_companion_url=row[4] or None,
        )

    @staticmethod
    def _build_record(row) -> MigrationRecord:
        return MigrationRecord(
            item_id=str(row[0]),
            original_payload_url=row[1] or "",
            original_companion_url=row[2],
            new_payload_url=row[3],
            new_companion_url=row[4],
            status=MigrationStatus(row[5]),
            error_message=row[6],
            completed_at=row[7],
        )


def _is_hosted_on(url: Optional[str], hosts: tuple[str, ...]) -> bool:
    if not url or not hosts:
        return False
    netloc = urlsplit(url).hostname or ""
    return any(netloc == host or netloc.endswith("." + host) for host in hosts)


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"
