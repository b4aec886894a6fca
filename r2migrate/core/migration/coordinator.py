"""
Backlog migration coordinator.

Moves each legacy item (a video plus an optional thumbnail) into the
object store and records the outcome:

    fetch source -> derive key -> upload -> companion -> persist completed

Any failure before the final persist marks the record failed with the
error message. The single-item call re-raises; the batch loop records a
failed outcome and carries on with the next item.

Items are processed one at a time with a fixed pause in between. Whether
an item still needs work is decided by its record status alone.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol
from urllib.parse import unquote, urlsplit

from ..errors import OperationCancelledError
from .cancellation import CancellationToken
from .models import (
    BatchReport,
    ItemOutcome,
    MigrationRecord,
    MigrationStatus,
    PendingAsset,
)
from .uploader import ChunkedUploader, ProgressCallback

logger = logging.getLogger(__name__)

ITEM_DELAY_SECONDS = 0.5
MAX_OUTCOMES = 200

VIDEO_PREFIX = "videos"
THUMBNAIL_PREFIX = "thumbnails"
DEFAULT_VIDEO_NAME = "video.mp4"
DEFAULT_THUMBNAIL_NAME = "thumb.jpg"
DEFAULT_VIDEO_CONTENT_TYPE = "video/mp4"
DEFAULT_THUMBNAIL_CONTENT_TYPE = "image/jpeg"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

OutcomeCallback = Callable[[ItemOutcome], None]


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

class FetchedSource(Protocol):
    content: bytes
    content_type: Optional[str]


class SourceFetcher(Protocol):
    """Downloads a legacy asset. Raises SourceFetchError on non-2xx."""

    async def fetch(
        self,
        url: str,
        token: Optional[CancellationToken] = None,
    ) -> FetchedSource: ...


class MigrationRecordStore(Protocol):
    """
    Persistence the coordinator needs.

    Implemented by the Snowflake MigrationRepository; writes are upserts
    keyed by item id.
    """

    def get_record(self, item_id: str) -> Optional[MigrationRecord]: ...

    def save_record(self, record: MigrationRecord) -> None: ...

    def update_asset_urls(
        self,
        item_id: str,
        video_url: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
    ) -> None: ...

    def list_pending_assets(
        self,
        limit: Optional[int] = None,
        skip_source_hosts: Iterable[str] = (),
    ) -> list[PendingAsset]: ...


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def destination_key(
    owner_id: str,
    prefix: str,
    timestamp_ms: int,
    source_url: str,
    default_name: str,
) -> str:
    """
    Build "{owner}/{prefix}/migrated-{timestamp}-{basename}".

    The basename is the last path segment of the source URL with query
    and fragment dropped; characters outside [A-Za-z0-9._-] become "_".
    """
    path = urlsplit(source_url).path if source_url else ""
    name = _clean_segment(unquote(path.rsplit("/", 1)[-1])) or default_name
    owner = _clean_segment(owner_id)
    if not owner:
        raise ValueError("Owner id cannot be empty")
    return f"{owner}/{prefix}/migrated-{timestamp_ms}-{name}"


def _clean_segment(value: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", value).strip("_")


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class MigrationCoordinator:
    """Runs single-item and backlog migrations."""

    def __init__(
        self,
        uploader: ChunkedUploader,
        record_store: MigrationRecordStore,
        source: SourceFetcher,
        public_url: str,
        *,
        item_delay_seconds: float = ITEM_DELAY_SECONDS,
        max_outcomes: int = MAX_OUTCOMES,
        skip_source_hosts: Iterable[str] = (),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._uploader = uploader
        self._store = record_store
        self._source = source
        self._public_base = public_url.rstrip("/") + "/"
        self._item_delay_seconds = item_delay_seconds
        self._max_outcomes = max_outcomes
        self._skip_source_hosts = tuple(skip_source_hosts)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def is_in_store(self, url: Optional[str]) -> bool:
        """True when `url` already points at our public base."""
        return bool(url) and url.startswith(self._public_base)

    async def migrate_item(
        self,
        asset: PendingAsset,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ItemOutcome:
        """
        Migrate one item and persist the result.

        A completed record is returned as-is without touching the network.
        On failure the record is saved as failed and the error re-raised.
        Raises InvalidTransitionError for a record stuck in migrating.
        """
        token = token or CancellationToken()

        record = self._store.get_record(asset.item_id)
        if record is not None and record.status == MigrationStatus.COMPLETED:
            logger.info("Item already migrated", extra={"item_id": asset.item_id})
            return ItemOutcome(
                item_id=asset.item_id,
                success=True,
                new_payload_url=record.new_payload_url,
                new_companion_url=record.new_companion_url,
            )

        if record is None:
            record = MigrationRecord.for_asset(asset)
        else:
            record.original_payload_url = asset.source_payload_url
            record.original_companion_url = asset.source_companion_url

        record.start()
        self._store.save_record(record)

        logger.info(
            "Migrating item",
            extra={"item_id": asset.item_id, "owner_id": asset.owner_id}
        )

        try:
            timestamp_ms = int(self._clock().timestamp() * 1000)
            new_payload_url = await self._migrate_payload(
                asset, timestamp_ms, token, progress
            )
            new_companion_url = await self._migrate_companion(
                asset, timestamp_ms, token
            )

            self._store.update_asset_urls(
                asset.item_id,
                video_url=new_payload_url,
                thumbnail_url=new_companion_url,
            )
            record.complete(
                new_payload_url,
                new_companion_url,
                completed_at=self._clock(),
            )
            self._store.save_record(record)
        except (Exception, asyncio.CancelledError) as e:
            self._persist_failure(record, str(e) or type(e).__name__)
            raise

        logger.info(
            "Item migrated",
            extra={
                "item_id": asset.item_id,
                "new_payload_url": new_payload_url,
                "new_companion_url": new_companion_url,
            }
        )
        return ItemOutcome(
            item_id=asset.item_id,
            success=True,
            new_payload_url=new_payload_url,
            new_companion_url=new_companion_url,
        )

    async def migrate_backlog(
        self,
        token: Optional[CancellationToken] = None,
        limit: Optional[int] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> BatchReport:
        """
        Migrate every item whose record is missing, pending or failed.

        Checks the token before each item: a stop request ends the run
        after the current item, a cancel also interrupts it. Per-item
        failures are recorded in the report and never raised.
        """
        token = token or CancellationToken()
        assets = self._store.list_pending_assets(
            limit=limit,
            skip_source_hosts=self._skip_source_hosts,
        )
        report = BatchReport(total=len(assets), max_outcomes=self._max_outcomes)

        logger.info("Starting backlog migration", extra={"total": report.total})

        for asset in assets:
            if token.should_stop:
                break

            if report.attempted:
                try:
                    await token.sleep(self._item_delay_seconds)
                except OperationCancelledError:
                    break
                if token.should_stop:
                    break

            # another run may have finished it since enumeration
            record = self._store.get_record(asset.item_id)
            if record is not None and not record.is_resumable:
                report.skipped += 1
                continue

            try:
                outcome = await self.migrate_item(asset, token)
            except OperationCancelledError as e:
                outcome = ItemOutcome(item_id=asset.item_id, success=False, error=str(e))
            except Exception as e:
                outcome = ItemOutcome(
                    item_id=asset.item_id,
                    success=False,
                    error=str(e) or type(e).__name__,
                )

            report.record(outcome)
            if on_outcome is not None:
                on_outcome(outcome)

        report.cancelled = token.cancelled
        report.stopped = token.should_stop and report.remaining > 0

        logger.info(
            "Backlog migration finished",
            extra={
                "total": report.total,
                "attempted": report.attempted,
                "succeeded": report.succeeded,
                "failed": report.failed,
                "skipped": report.skipped,
                "stopped": report.stopped,
                "cancelled": report.cancelled,
            }
        )
        return report

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    async def _migrate_payload(
        self,
        asset: PendingAsset,
        timestamp_ms: int,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> str:
        source = await self._source.fetch(asset.source_payload_url, token)
        key = destination_key(
            asset.owner_id,
            VIDEO_PREFIX,
            timestamp_ms,
            asset.source_payload_url,
            DEFAULT_VIDEO_NAME,
        )
        return await self._uploader.upload(
            source.content,
            key,
            source.content_type or DEFAULT_VIDEO_CONTENT_TYPE,
            token=token,
            progress=progress,
        )

    async def _migrate_companion(
        self,
        asset: PendingAsset,
        timestamp_ms: int,
        token: CancellationToken,
    ) -> Optional[str]:
        """
        Move the thumbnail. Failures are logged and yield None so the
        item still completes; cancellation propagates.
        """
        url = asset.source_companion_url
        if not url:
            return None
        if self.is_in_store(url):
            return url

        try:
            source = await self._source.fetch(url, token)
            key = destination_key(
                asset.owner_id,
                THUMBNAIL_PREFIX,
                timestamp_ms,
                url,
                DEFAULT_THUMBNAIL_NAME,
            )
            return await self._uploader.upload(
                source.content,
                key,
                source.content_type or DEFAULT_THUMBNAIL_CONTENT_TYPE,
                token=token,
            )
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Thumbnail migration failed, keeping original",
                extra={"item_id": asset.item_id, "url": url, "error": str(e)}
            )
            return None

    def _persist_failure(self, record: MigrationRecord, message: str) -> None:
        logger.error(
            "Item migration failed",
            extra={"item_id": record.item_id, "error": message}
        )
        if record.status == MigrationStatus.COMPLETED:
            # the final save itself failed; nothing more can be written
            return
        record.fail(message)
        try:
            self._store.save_record(record)
        except Exception as e:
            logger.error(
                "Could not persist failed status",
                extra={"item_id": record.item_id, "error": str(e)}
            )
