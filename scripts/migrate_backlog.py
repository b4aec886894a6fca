#!/usr/bin/env python3
"""
Migrate the legacy video backlog into R2.

Processes every video whose migration record is missing, pending or
failed, one at a time, oldest first.

Usage:
    python scripts/migrate_backlog.py [--limit N] [--item-delay SECONDS] [--dry-run]

Ctrl-C once to stop after the current video, twice to abort it.

Requires:
    - .env file with R2 and Snowflake credentials (or the mock modes)
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add the project root to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from r2migrate.api.dependencies import build_snowflake_config, build_storage_config
from r2migrate.config.settings import get_settings
from r2migrate.core.migration.cancellation import CancellationToken
from r2migrate.core.migration.coordinator import MigrationCoordinator
from r2migrate.core.migration.models import ItemOutcome
from r2migrate.core.migration.uploader import ChunkedUploader
from r2migrate.infrastructure.legacy.client import LegacySourceClient
from r2migrate.infrastructure.snowflake.client import create_snowflake_connection
from r2migrate.infrastructure.snowflake.repositories.migrations import MigrationRepository
from r2migrate.infrastructure.storage.client import create_object_store_client

logger = logging.getLogger("migrate_backlog")


def install_interrupt_handler(token: CancellationToken) -> None:
    """First SIGINT requests a stop, the second cancels the current item."""
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        if token.stop_requested:
            print("\nCancelling current video...")
            token.cancel()
        else:
            print("\nStopping after the current video (Ctrl-C again to abort it)...")
            token.request_stop()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl-C aborts the run
        logger.debug("Signal handlers not supported on this platform")


def print_outcome(outcome: ItemOutcome) -> None:
    if outcome.success:
        print(f"[OK] {outcome.item_id} -> {outcome.new_payload_url}")
    else:
        print(f"[ERR] {outcome.item_id}: {outcome.error}")


async def run(limit: int | None, item_delay: float | None, dry_run: bool) -> bool:
    settings = get_settings()

    missing = settings.validate_required_fields()
    if missing:
        print(f"ERROR: Missing configuration: {', '.join(missing)}")
        return False

    snowflake_config = None if settings.snowflake_mock_mode else build_snowflake_config(settings)

    with create_snowflake_connection(snowflake_config, mock_mode=settings.snowflake_mock_mode) as conn:
        repository = MigrationRepository(conn)

        if dry_run:
            assets = repository.list_pending_assets(
                limit=limit,
                skip_source_hosts=settings.skip_source_hosts_list,
            )
            print("\n=== DRY RUN - Nothing will be uploaded ===\n")
            for asset in assets:
                print(f"Would migrate: {asset.item_id} {asset.source_payload_url}")
            print(f"\nTotal: {len(assets)} videos")
            return True

        store = create_object_store_client(
            build_storage_config(settings),
            mock_mode=settings.r2_mock_mode,
        )
        source = LegacySourceClient()
        try:
            coordinator = MigrationCoordinator(
                ChunkedUploader(store),
                repository,
                source,
                store.public_url(""),
                item_delay_seconds=(
                    settings.migration_item_delay_seconds if item_delay is None else item_delay
                ),
                max_outcomes=settings.migration_max_outcomes,
                skip_source_hosts=settings.skip_source_hosts_list,
            )

            token = CancellationToken()
            install_interrupt_handler(token)

            report = await coordinator.migrate_backlog(
                token=token,
                limit=limit,
                on_outcome=print_outcome,
            )
        finally:
            await source.aclose()
            await store.aclose()

    print("\n=== Migration Summary ===")
    print(f"Pending:   {report.total}")
    print(f"Attempted: {report.attempted}")
    print(f"Succeeded: {report.succeeded}")
    print(f"Failed:    {report.failed}")
    print(f"Skipped:   {report.skipped}")
    if report.cancelled:
        print("Run was cancelled")
    elif report.stopped:
        print(f"Run was stopped with {report.remaining} videos left")

    return report.failed == 0


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Migrate legacy videos into R2')
    parser.add_argument('--limit', type=int, default=None,
                        help='Maximum number of videos to process')
    parser.add_argument('--item-delay', type=float, default=None,
                        help='Seconds to pause between videos (default from settings)')
    parser.add_argument('--dry-run', action='store_true',
                        help='List the backlog without uploading anything')
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=get_settings().log_level.upper(),
    )

    if args.limit is not None and args.limit < 1:
        print("ERROR: --limit must be at least 1")
        sys.exit(1)

    success = asyncio.run(run(args.limit, args.item_delay, args.dry_run))
    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
