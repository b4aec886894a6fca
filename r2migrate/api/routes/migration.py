"""
Migration RPC endpoint.

One POST endpoint dispatched on the "action" field, so the admin panel
can drive the whole migration through a single URL:

- get-stats / get-pending: what is left to move
- get-presigned-url, initiate-multipart, get-part-url,
  complete-multipart, abort-multipart, delete-object: object store
  primitives for a client that streams the bytes itself
- update-video-urls / mark-failed: record the outcome of a client-side
  migration
- migrate-video: run one item server-side through the coordinator

Every action requires an admin API key; it is checked before any signing
or network work happens.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...core.errors import (
    ConfigurationError,
    InvalidTransitionError,
    MigrationError,
)
from ...core.migration.models import (
    CompletedPart,
    MigrationRecord,
    MigrationStatus,
    PendingAsset,
)
from ...core.migration.coordinator import MigrationCoordinator
from ...infrastructure.storage.client import ObjectStoreClient
from ..dependencies import (
    MigrationRepositoryDep,
    ObjectStoreProviderDep,
    Operator,
    SettingsDep,
    SourceClientDep,
    build_coordinator,
    build_storage_config,
)

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_CONTENT_TYPE = "video/mp4"
DEFAULT_FAILURE_MESSAGE = "Marked failed by operator"


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadedPart(_CamelModel):
    """One part reported by the client when completing an upload."""
    part_number: int = Field(description="1-based part number")
    etag: str = Field(description="ETag returned by the part PUT")


class MigrationRequest(_CamelModel):
    """
    Body of every RPC call.

    Which fields are required depends on the action; missing ones are
    reported as 400 by the handler, not by schema validation.
    """
    action: str = Field(description="Operation to perform")
    file_name: Optional[str] = Field(default=None, description="Object key in the bucket")
    content_type: Optional[str] = Field(default=None, description="MIME type of the object")
    upload_id: Optional[str] = Field(default=None, description="Multipart upload id")
    part_number: Optional[int] = Field(default=None, description="1-based part number")
    parts: Optional[list[UploadedPart]] = Field(default=None, description="Parts to complete")
    video_id: Optional[str] = Field(default=None, description="Item id in the videos table")
    video_url: Optional[str] = Field(default=None, description="New video URL")
    thumbnail_url: Optional[str] = Field(default=None, description="New thumbnail URL")
    error_message: Optional[str] = Field(default=None, description="Failure reason")


class _Context:
    """Everything a handler may need. The object store opens on first use."""

    def __init__(self, request, settings, repository, stores, source) -> None:
        self.request = request
        self.settings = settings
        self.repository = repository
        self._stores = stores
        self._source = source

    @property
    def store(self) -> ObjectStoreClient:
        return self._stores.client

    def coordinator(self) -> MigrationCoordinator:
        return build_coordinator(self.settings, self.store, self.repository, self._source)


Handler = Callable[[_Context], Awaitable[dict[str, Any]]]


def _require(request: MigrationRequest, *fields: str) -> None:
    """Raise 400 naming every required field, if any is missing."""
    values = [getattr(request, name) for name in fields]
    if any(value is None or value == "" for value in values):
        names = ", ".join(to_camel(name) for name in fields)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{names} required",
        )


def _asset_json(asset: PendingAsset) -> dict[str, Any]:
    return {
        "id": asset.item_id,
        "user_id": asset.owner_id,
        "title": asset.title,
        "video_url": asset.source_payload_url,
        "thumbnail_url": asset.source_companion_url,
    }


# ---------------------------------------------------------------------------
# Action Handlers
# ---------------------------------------------------------------------------

async def _get_stats(ctx: _Context) -> dict[str, Any]:
    counts = ctx.repository.status_counts()
    total = ctx.repository.count_assets()

    # No public URL configured means nothing can be served from the store yet
    public_url = build_storage_config(ctx.settings).public_url
    in_store = 0
    if public_url:
        in_store = ctx.repository.count_assets(url_prefix=f"{public_url.rstrip('/')}/")
    return {
        **counts,
        "legacyStorageCount": max(0, total - in_store),
        "r2Count": in_store,
    }


async def _get_pending(ctx: _Context) -> dict[str, Any]:
    assets = ctx.repository.list_pending_assets(
        skip_source_hosts=ctx.settings.skip_source_hosts_list,
    )
    logger.info("Listed pending items", extra={"count": len(assets)})
    return {
        "videos": [_asset_json(asset) for asset in assets],
        "totalPending": len(assets),
    }


async def _get_presigned_url(ctx: _Context) -> dict[str, Any]:
    request = ctx.request
    _require(request, "file_name")
    return {
        "presignedUrl": ctx.store.get_simple_put_url(request.file_name),
        "publicUrl": ctx.store.public_url(request.file_name),
    }


async def _initiate_multipart(ctx: _Context) -> dict[str, Any]:
    request = ctx.request
    _require(request, "file_name")
    upload_id = await ctx.store.initiate_multipart(
        request.file_name,
        request.content_type or DEFAULT_CONTENT_TYPE,
    )
    return {
        "uploadId": upload_id,
        "publicUrl": ctx.store.public_url(request.file_name),
    }


async def _get_part_url(ctx: _Context) -> dict[str, Any]:
    request = ctx.request
    _require(request, "file_name", "upload_id", "part_number")
    url = ctx.store.get_part_upload_url(
        request.file_name, request.upload_id, request.part_number
    )
    logger.debug(
        "Generated part URL",
        extra={"key": request.file_name, "part_number": request.part_number}
    )
    return {"presignedUrl": url}


async def _complete_multipart(ctx: _Context) -> dict[str, Any]:
    request = ctx.request
    _require(request, "file_name", "upload_id", "parts")
    parts = [
        CompletedPart(part_number=part.part_number, etag=part.etag)
        for part in request.parts
    ]
    await ctx.store.complete_multipart(request.file_name, request.upload_id, parts)
    return {
        "success": True,
        "publicUrl": ctx.store.public_url(request.file_name),
    }


async def _abort_multipart(ctx: _Context) -> dict[str, Any]:
    request = ctx.request
    _require(request, "file_name", "upload_id")
    await ctx.store.abort_multipart(request.file_name, request.upload_id)
    return {"success": True}


async def _delete_object(ctx: _Context) -> dict[str, Any]:
    request = ctx.request
    _require(request, "file_name")
    await ctx.store.delete_object(request.file_name)
    return {"success": True}


async def _update_video_urls(ctx: _Context) -> dict[str, Any]:
    """
    Record a client-side migration as completed.

    The original URLs are captured before the videos row is rewritten.
    """
    request = ctx.request
    _require(request, "video_id")
    asset = _get_asset_or_404(ctx, request.video_id)

    ctx.repository.update_asset_urls(
        asset.item_id,
        video_url=request.video_url or None,
        thumbnail_url=request.thumbnail_url or None,
    )
    ctx.repository.save_record(MigrationRecord(
        item_id=asset.item_id,
        original_payload_url=asset.source_payload_url,
        original_companion_url=asset.source_companion_url,
        new_payload_url=request.video_url or None,
        new_companion_url=request.thumbnail_url or None,
        status=MigrationStatus.COMPLETED,
        completed_at=datetime.now(timezone.utc),
    ))

    logger.info("Updated video URLs", extra={"item_id": asset.item_id})
    return {"success": True, "videoId": asset.item_id}


async def _mark_failed(ctx: _Context) -> dict[str, Any]:
    """
    Record a failure reported by the client.

    Also the way to release a record left in migrating by a crashed run.
    A completed record stays completed (409).
    """
    request = ctx.request
    _require(request, "video_id")

    record = ctx.repository.get_record(request.video_id)
    if record is None:
        record = MigrationRecord.for_asset(_get_asset_or_404(ctx, request.video_id))

    try:
        record.fail(request.error_message or DEFAULT_FAILURE_MESSAGE)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    ctx.repository.save_record(record)

    logger.info("Marked migration failed", extra={"item_id": request.video_id})
    return {"success": True, "videoId": request.video_id}


async def _migrate_video(ctx: _Context) -> dict[str, Any]:
    """Run one item server-side. Failures are already persisted as failed."""
    request = ctx.request
    _require(request, "video_id")
    asset = _get_asset_or_404(ctx, request.video_id)

    try:
        outcome = await ctx.coordinator().migrate_item(asset)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ConfigurationError:
        raise
    except MigrationError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return {
        "success": True,
        "videoId": outcome.item_id,
        "newVideoUrl": outcome.new_payload_url,
        "newThumbnailUrl": outcome.new_companion_url,
    }


def _get_asset_or_404(ctx: _Context, item_id: str) -> PendingAsset:
    asset = ctx.repository.get_asset(item_id)
    if asset is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Video {item_id} not found",
        )
    return asset


_HANDLERS: dict[str, Handler] = {
    "get-stats": _get_stats,
    "get-pending": _get_pending,
    "get-presigned-url": _get_presigned_url,
    "initiate-multipart": _initiate_multipart,
    "get-part-url": _get_part_url,
    "complete-multipart": _complete_multipart,
    "abort-multipart": _abort_multipart,
    "delete-object": _delete_object,
    "update-video-urls": _update_video_urls,
    "mark-failed": _mark_failed,
    "migrate-video": _migrate_video,
}


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

@router.post(
    "",
    summary="Run a migration action",
    description="Dispatches on the `action` field. Requires an admin API key.",
    responses={
        400: {"description": "Missing field or unknown action"},
        401: {"description": "Missing or invalid API key"},
        403: {"description": "API key is not an admin key"},
        404: {"description": "Unknown videoId"},
        409: {"description": "Record state does not allow the action"},
        502: {"description": "Object store or legacy host failed"},
    },
)
async def migrate_to_r2(
    operator: Operator,
    request: MigrationRequest,
    settings: SettingsDep,
    repository: MigrationRepositoryDep,
    stores: ObjectStoreProviderDep,
    source: SourceClientDep,
) -> dict[str, Any]:
    handler = _HANDLERS.get(request.action)
    if handler is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid action: {request.action}",
        )

    logger.info("Migration action", extra={"action": request.action})

    ctx = _Context(request, settings, repository, stores, source)
    try:
        return await handler(ctx)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
