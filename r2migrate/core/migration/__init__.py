"""
Migration engine: chunked uploads, cancellation and backlog coordination.
"""

from .cancellation import CancellationToken, retry_async
from .coordinator import MigrationCoordinator, destination_key
from .models import (
    BatchReport,
    CompletedPart,
    ItemOutcome,
    MigrationRecord,
    MigrationStatus,
    PendingAsset,
    UploadSession,
)
from .uploader import ChunkedUploader, plan_parts

__all__ = [
    "BatchReport",
    "CancellationToken",
    "ChunkedUploader",
    "CompletedPart",
    "ItemOutcome",
    "MigrationCoordinator",
    "MigrationRecord",
    "MigrationStatus",
    "PendingAsset",
    "UploadSession",
    "destination_key",
    "plan_parts",
    "retry_async",
]
