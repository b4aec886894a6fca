"""
Unit tests for the migration domain models.

These tests verify the record state machine and the bookkeeping types
without touching external services (no HTTP, no database).

Testing philosophy:
- Test behavior, not implementation
- Each test should have a clear "given/when/then" structure
- Prefer real objects over mocks where practical
"""

from collections import deque
from dataclasses import fields
from datetime import datetime, timezone

import pytest

from r2migrate.core.errors import InvalidTransitionError
from r2migrate.core.migration.models import (
    BatchReport,
    CompletedPart,
    ItemOutcome,
    MigrationRecord,
    MigrationStatus,
    PendingAsset,
    UploadSession,
)


def make_asset(**overrides) -> PendingAsset:
    values = dict(
        item_id="v1",
        owner_id="user-1",
        title="Launch demo",
        source_payload_url="https://legacy.example.com/v1.mp4",
        source_companion_url="https://legacy.example.com/v1.jpg",
    )
    values.update(overrides)
    return PendingAsset(**values)


# ---------------------------------------------------------------------------
# MigrationRecord
# ---------------------------------------------------------------------------

class TestMigrationRecord:
    """Tests for the pending -> migrating -> completed | failed lifecycle."""

    def test_new_record_copies_original_urls(self):
        record = MigrationRecord.for_asset(make_asset())

        assert record.status == MigrationStatus.PENDING
        assert record.original_payload_url == "https://legacy.example.com/v1.mp4"
        assert record.original_companion_url == "https://legacy.example.com/v1.jpg"
        assert record.new_payload_url is None

    def test_happy_path(self):
        record = MigrationRecord.for_asset(make_asset())
        done_at = datetime(2024, 1, 1, tzinfo=timezone.utc)

        record.start()
        record.complete("https://pub.example.com/a.mp4", None, completed_at=done_at)

        assert record.status == MigrationStatus.COMPLETED
        assert record.new_payload_url == "https://pub.example.com/a.mp4"
        assert record.completed_at == done_at

    def test_failed_record_can_restart(self):
        """A re-run picks failed items up again and clears the old error."""
        record = MigrationRecord.for_asset(make_asset())
        record.start()
        record.fail("Failed to download source: 404")

        assert record.is_resumable
        record.start()

        assert record.status == MigrationStatus.MIGRATING
        assert record.error_message is None

    def test_completed_is_terminal(self):
        record = MigrationRecord.for_asset(make_asset())
        record.start()
        record.complete("https://pub.example.com/a.mp4")

        assert not record.is_resumable
        with pytest.raises(InvalidTransitionError):
            record.start()
        with pytest.raises(InvalidTransitionError):
            record.fail("late error")

    def test_cannot_complete_without_starting(self):
        record = MigrationRecord.for_asset(make_asset())

        with pytest.raises(InvalidTransitionError, match="pending to completed"):
            record.complete("https://pub.example.com/a.mp4")

    def test_migrating_record_cannot_start_again(self):
        record = MigrationRecord.for_asset(make_asset())
        record.start()

        with pytest.raises(InvalidTransitionError):
            record.start()

    def test_pending_record_can_fail(self):
        record = MigrationRecord.for_asset(make_asset())
        record.fail("marked failed by operator")

        assert record.status == MigrationStatus.FAILED
        assert record.error_message == "marked failed by operator"


# ---------------------------------------------------------------------------
# Multipart bookkeeping
# ---------------------------------------------------------------------------

class TestCompletedPart:
    """Tests for the CompletedPart value object."""

    def test_part_numbers_start_at_one(self):
        with pytest.raises(ValueError):
            CompletedPart(part_number=0, etag='"abc"')

    def test_etag_required(self):
        with pytest.raises(ValueError):
            CompletedPart(part_number=1, etag="")


class TestUploadSession:
    """Parts are appended in order and numbered contiguously."""

    def test_parts_accumulate_in_order(self):
        session = UploadSession(destination_key="k", upload_id="u")
        session.add_part(1, '"a"')
        session.add_part(2, '"b"')

        assert [p.part_number for p in session.sorted_parts()] == [1, 2]

    def test_gap_rejected(self):
        session = UploadSession(destination_key="k", upload_id="u")
        session.add_part(1, '"a"')

        with pytest.raises(ValueError, match="Expected part 2"):
            session.add_part(3, '"c"')


# ---------------------------------------------------------------------------
# BatchReport
# ---------------------------------------------------------------------------

class TestBatchReport:
    """Running totals for a backlog run."""

    def test_counts_success_and_failure(self):
        report = BatchReport(total=3)
        report.record(ItemOutcome(item_id="a", success=True))
        report.record(ItemOutcome(item_id="b", success=False, error="boom"))

        assert report.attempted == 2
        assert report.succeeded == 1
        assert report.failed == 1
        assert report.remaining == 1

    def test_skipped_items_are_not_remaining(self):
        report = BatchReport(total=2)
        report.skipped = 1
        report.record(ItemOutcome(item_id="a", success=True))

        assert report.remaining == 0

    def test_outcomes_keep_most_recent(self):
        """Counts stay exact even when old outcomes are dropped."""
        report = BatchReport(total=5, max_outcomes=3)
        for i in range(5):
            report.record(ItemOutcome(item_id=str(i), success=True))

        assert report.succeeded == 5
        assert [o.item_id for o in report.outcomes] == ["2", "3", "4"]

    def test_outcomes_typed_as_item_outcomes(self):
        outcomes = next(f for f in fields(BatchReport) if f.name == "outcomes")

        assert outcomes.type == deque[ItemOutcome]
        assert not outcomes.init
