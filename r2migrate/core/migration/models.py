"""
Domain models for the migration engine.

These models describe what is being moved and how far along it is.
They have no knowledge of Snowflake, httpx, or FastAPI; repositories and
routes translate to and from them.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..errors import InvalidTransitionError


class MigrationStatus(Enum):
    """Lifecycle of one item's migration."""
    PENDING = "pending"
    MIGRATING = "migrating"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses the batch loop is allowed to pick up. A missing record counts too.
RESUMABLE_STATUSES = frozenset({MigrationStatus.PENDING, MigrationStatus.FAILED})


@dataclass(frozen=True)
class PendingAsset:
    """
    Read-only view of a backlog item as supplied by the record store.

    The coordinator never mutates this; progress lives on MigrationRecord.
    """
    item_id: str
    owner_id: str
    title: str
    source_payload_url: str
    source_companion_url: Optional[str] = None


@dataclass
class MigrationRecord:
    """
    Persisted outcome of migrating one item.

    One record per item, upserted by item_id. The transition methods
    enforce the state machine:

        pending -> migrating -> completed | failed
        failed  -> migrating                (re-run)

    completed is terminal.
    """
    item_id: str
    original_payload_url: str
    original_companion_url: Optional[str] = None
    new_payload_url: Optional[str] = None
    new_companion_url: Optional[str] = None
    status: MigrationStatus = MigrationStatus.PENDING
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def for_asset(cls, asset: PendingAsset) -> "MigrationRecord":
        """Create a fresh pending record for an asset."""
        return cls(
            item_id=asset.item_id,
            original_payload_url=asset.source_payload_url,
            original_companion_url=asset.source_companion_url,
        )

    @property
    def is_resumable(self) -> bool:
        return self.status in RESUMABLE_STATUSES

    def start(self) -> None:
        """Move to migrating. Only pending or failed records may start."""
        if not self.is_resumable:
            raise _transition_error(self, MigrationStatus.MIGRATING)
        self.status = MigrationStatus.MIGRATING
        self.error_message = None

    def complete(
        self,
        new_payload_url: str,
        new_companion_url: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        """Record the new URLs and mark the item completed."""
        if self.status != MigrationStatus.MIGRATING:
            raise _transition_error(self, MigrationStatus.COMPLETED)
        self.new_payload_url = new_payload_url
        self.new_companion_url = new_companion_url
        self.status = MigrationStatus.COMPLETED
        self.error_message = None
        self.completed_at = completed_at or datetime.now(timezone.utc)

    def fail(self, error_message: str) -> None:
        """Mark the item failed. Completed records stay completed."""
        if self.status == MigrationStatus.COMPLETED:
            raise _transition_error(self, MigrationStatus.FAILED)
        self.status = MigrationStatus.FAILED
        self.error_message = error_message


def _transition_error(
    record: MigrationRecord,
    target: MigrationStatus,
) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"Cannot move item {record.item_id} from {record.status.value} to {target.value}"
    )


@dataclass(frozen=True)
class CompletedPart:
    """One uploaded part of a multipart upload."""
    part_number: int
    etag: str

    def __post_init__(self) -> None:
        if self.part_number < 1:
            raise ValueError("Part numbers start at 1")
        if not self.etag:
            raise ValueError("ETag cannot be empty")


@dataclass(frozen=True)
class PartRange:
    """Byte range [start, end) covered by one part."""
    part_number: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class UploadSession:
    """
    State of one in-flight multipart upload.

    Owned by exactly one uploader invocation and discarded after
    completion or abort. Parts must arrive in order, starting at 1.
    """
    destination_key: str
    upload_id: str
    parts: list[CompletedPart] = field(default_factory=list)

    def add_part(self, part_number: int, etag: str) -> CompletedPart:
        """Append the next part, enforcing contiguous numbering."""
        expected = len(self.parts) + 1
        if part_number != expected:
            raise ValueError(
                f"Expected part {expected}, got part {part_number}"
            )
        part = CompletedPart(part_number=part_number, etag=etag)
        self.parts.append(part)
        return part

    def sorted_parts(self) -> list[CompletedPart]:
        return sorted(self.parts, key=lambda p: p.part_number)


@dataclass(frozen=True)
class ItemOutcome:
    """Result of migrating one item, as reported to operators."""
    item_id: str
    success: bool
    new_payload_url: Optional[str] = None
    new_companion_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchReport:
    """
    Running totals for a backlog run.

    outcomes is bounded so a very large backlog cannot grow the report
    without limit; counts are always exact.
    """
    total: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    stopped: bool = False
    cancelled: bool = False
    max_outcomes: int = 200
    outcomes: deque[ItemOutcome] = field(init=False)

    def __post_init__(self) -> None:
        self.outcomes = deque(maxlen=self.max_outcomes)

    def record(self, outcome: ItemOutcome) -> None:
        self.attempted += 1
        if outcome.success:
            self.succeeded += 1
        else:
            self.failed += 1
        self.outcomes.append(outcome)

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.attempted - self.skipped)
