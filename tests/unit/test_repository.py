"""
Unit tests for MigrationRepository over the mock Snowflake connection.
"""

from datetime import datetime, timezone

from r2migrate.core.migration.models import MigrationRecord, MigrationStatus


def at_minute(minute: int) -> datetime:
    return datetime(2024, 1, 1, 9, minute, tzinfo=timezone.utc)


def failed_record(item_id: str, message: str = "boom") -> MigrationRecord:
    return MigrationRecord(
        item_id=item_id,
        original_payload_url=f"https://legacy.example.com/{item_id}.mp4",
        status=MigrationStatus.FAILED,
        error_message=message,
    )


class TestMigrationRecords:
    """Upserts keyed by video id."""

    def test_missing_record_is_none(self, repository):
        assert repository.get_record("nope") is None

    def test_save_is_idempotent(self, repository, snowflake):
        record = failed_record("v1")

        repository.save_record(record)
        repository.save_record(record)

        assert len(snowflake._storage["video_migrations"]) == 1
        assert repository.get_record("v1") == record

    def test_later_save_wins(self, repository):
        repository.save_record(failed_record("v1"))
        completed = MigrationRecord(
            item_id="v1",
            original_payload_url="https://legacy.example.com/v1.mp4",
            new_payload_url="https://pub.example.com/v1.mp4",
            status=MigrationStatus.COMPLETED,
            completed_at=at_minute(5),
        )

        repository.save_record(completed)

        loaded = repository.get_record("v1")
        assert loaded.status == MigrationStatus.COMPLETED
        assert loaded.error_message is None
        assert loaded.completed_at == at_minute(5)

    def test_status_counts_include_every_status(self, repository):
        repository.save_record(failed_record("v1"))
        repository.save_record(failed_record("v2"))

        assert repository.status_counts() == {
            "pending": 0,
            "migrating": 0,
            "completed": 0,
            "failed": 2,
        }


class TestPendingAssets:
    """The backlog query."""

    def test_missing_pending_and_failed_are_listed(self, repository, snowflake):
        for minute, vid in enumerate(["none", "failed", "done"]):
            snowflake._add_video(vid, "u1", f"https://legacy.example.com/{vid}.mp4",
                                 created_at=at_minute(minute))
        repository.save_record(failed_record("failed"))
        repository.save_record(MigrationRecord(
            item_id="done",
            original_payload_url="https://legacy.example.com/done.mp4",
            status=MigrationStatus.COMPLETED,
        ))

        ids = [asset.item_id for asset in repository.list_pending_assets()]

        assert ids == ["none", "failed"]

    def test_oldest_first_and_limit(self, repository, snowflake):
        snowflake._add_video("late", "u1", "https://legacy.example.com/a.mp4", created_at=at_minute(9))
        snowflake._add_video("early", "u1", "https://legacy.example.com/b.mp4", created_at=at_minute(1))
        snowflake._add_video("mid", "u1", "https://legacy.example.com/c.mp4", created_at=at_minute(4))

        ids = [asset.item_id for asset in repository.list_pending_assets(limit=2)]

        assert ids == ["early", "mid"]

    def test_skip_hosts_match_subdomains_only(self, repository, snowflake):
        snowflake._add_video("yt", "u1", "https://www.youtube.com/watch?v=x", created_at=at_minute(1))
        snowflake._add_video("short", "u1", "https://youtu.be/x", created_at=at_minute(2))
        snowflake._add_video("lookalike", "u1", "https://notyoutube.com/x.mp4", created_at=at_minute(3))

        assets = repository.list_pending_assets(skip_source_hosts=["YouTube.com", "youtu.be"])

        assert [asset.item_id for asset in assets] == ["lookalike"]

    def test_limit_applies_after_skipping(self, repository, snowflake):
        snowflake._add_video("yt", "u1", "https://youtu.be/x", created_at=at_minute(1))
        snowflake._add_video("v1", "u1", "https://legacy.example.com/v1.mp4", created_at=at_minute(2))

        assets = repository.list_pending_assets(limit=1, skip_source_hosts=["youtu.be"])

        assert [asset.item_id for asset in assets] == ["v1"]

    def test_asset_fields(self, repository, snowflake):
        snowflake._add_video("v1", "u1", "https://legacy.example.com/v1.mp4",
                             thumbnail_url="", title="Laps")

        asset = repository.get_asset("v1")

        assert asset.owner_id == "u1"
        assert asset.title == "Laps"
        assert asset.source_companion_url is None


class TestVideoRows:
    """URL rewrites and counts on the videos table."""

    def test_update_keeps_unset_urls(self, repository, snowflake):
        snowflake._add_video("v1", "u1", "https://legacy.example.com/v1.mp4",
                             thumbnail_url="https://legacy.example.com/v1.jpg")

        repository.update_asset_urls("v1", video_url="https://pub.example.com/v1.mp4")

        video = snowflake._get_video("v1")
        assert video["video_url"] == "https://pub.example.com/v1.mp4"
        assert video["thumbnail_url"] == "https://legacy.example.com/v1.jpg"

    def test_update_with_nothing_is_noop(self, repository, snowflake):
        snowflake._add_video("v1", "u1", "https://legacy.example.com/v1.mp4")

        repository.update_asset_urls("v1")

        assert snowflake._get_video("v1")["video_url"] == "https://legacy.example.com/v1.mp4"

    def test_count_by_prefix(self, repository, snowflake):
        snowflake._add_video("a", "u1", "https://pub.example.com/u1/videos/a.mp4")
        snowflake._add_video("b", "u1", "https://legacy.example.com/b.mp4")
        snowflake._add_video("c", "u1", "https://pub.example.com/u1/videos/c.mp4")

        assert repository.count_assets() == 3
        assert repository.count_assets(url_prefix="https://pub.example.com/") == 2

    def test_count_prefix_treats_underscore_literally(self, repository, snowflake):
        snowflake._add_video("a", "u1", "https://pub_x.example.com/a.mp4")
        snowflake._add_video("b", "u1", "https://pubXx.example.com/b.mp4")

        assert repository.count_assets(url_prefix="https://pub_x") == 1
