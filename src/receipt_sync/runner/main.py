"""
CLI main entry point.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from ..api_client import ReceiptAPIClientError
from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..schemas.receipt import TripReference
from ..services import ReceiptNotFoundError, SyncEngine
from ..state_store import ReceiptStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-sync",
        description="Queue receipts offline and sync them to the receipt service",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # import command
    import_parser = subparsers.add_parser("import", help="Queue files as one new receipt")
    import_parser.add_argument(
        "files",
        type=Path,
        nargs="+",
        help="Page files in page order (JPEG or PDF)",
    )
    import_parser.add_argument(
        "--account",
        type=str,
        help="Account ID (default: last used account)",
    )
    import_parser.add_argument("--note", type=str, help="Note attached to the receipt")
    import_parser.add_argument("--trip-id", type=str, help="Trip reference ID")

    # sync command
    subparsers.add_parser(
        "sync", help="Upload queued receipts, poll review status and clean up"
    )

    # retry command
    retry_parser = subparsers.add_parser("retry", help="Retry failed uploads")
    retry_parser.add_argument(
        "--receipt-id",
        type=str,
        help="Retry one receipt (default: all failed receipts)",
    )

    # status command
    subparsers.add_parser("status", help="Show receipt statistics")

    # cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Delete local images of reviewed receipts past retention"
    )
    cleanup_parser.add_argument(
        "--retention-days",
        type=int,
        help="Store a new retention window before cleaning up",
    )

    # fetch-remote command
    fetch_parser = subparsers.add_parser(
        "fetch-remote", help="Mirror an account's receipts from the server"
    )
    fetch_parser.add_argument(
        "--account",
        type=str,
        required=True,
        help="Account ID to fetch",
    )

    return parser


def cmd_init_config(config_path: Path) -> int:
    """Write a default configuration file."""
    if config_path.exists():
        print(f"⚠️  {config_path} already exists, not overwriting")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_import(
    config: Config,
    files: list[Path],
    account_id: str | None,
    note: str | None,
    trip_id: str | None,
) -> int:
    """Queue files as a new receipt."""

    async def run() -> int:
        async with SyncEngine.from_config(config) as engine:
            account = account_id or engine.last_account_id
            if not account:
                print("❌ No account given and no previous account recorded (use --account)")
                return 1

            trip = TripReference(id=trip_id) if trip_id else None
            try:
                receipt = engine.import_files(account, files, note=note, trip_reference=trip)
            except (OSError, ValueError) as e:
                print(f"❌ Import failed: {e}")
                return 1

            engine.set_last_account_id(account)
            print(f"📥 Queued receipt {receipt.id} ({len(receipt.pages)} pages)")
            return 0

    return asyncio.run(run())


def cmd_sync(config: Config) -> int:
    """Run one full sync cycle."""
    print("🔄 Syncing receipts...")

    async def run() -> int:
        async with SyncEngine.from_config(config) as engine:
            engine.start()
            queue_result, status_result, cleanup_result = await engine.run_sync_cycle()

        print(f"   Uploaded:        {queue_result.uploaded}")
        print(f"   Failed:          {queue_result.failed}")
        print(f"   Waiting sign-in: {queue_result.requeued}")
        print(f"   Backing off:     {queue_result.deferred}")
        print(f"   Processed:       {status_result.processed}")
        print(f"   Rejected:        {status_result.rejected}")
        print(f"   Still pending:   {status_result.still_pending}")
        print(f"   Images cleaned:  {cleanup_result.images_cleaned}")

        errors = queue_result.errors + status_result.errors + cleanup_result.errors
        if errors:
            print("\n⚠️  Errors:")
            for error in errors:
                print(f"   - {error}")
            return 1

        print("✓ Sync completed")
        return 0

    return asyncio.run(run())


def cmd_retry(config: Config, receipt_id: str | None) -> int:
    """Requeue failed receipts and upload them."""

    async def run() -> int:
        async with SyncEngine.from_config(config) as engine:
            engine.start()
            try:
                if receipt_id:
                    result = await engine.retry_receipt(receipt_id)
                else:
                    result = await engine.retry_all_failed()
            except ReceiptNotFoundError as e:
                print(f"❌ {e}")
                return 1

        print(f"🔁 Uploaded {result.uploaded}, failed {result.failed}")
        for error in result.errors:
            print(f"   - {error}")
        return 0 if result.success else 1

    return asyncio.run(run())


def cmd_status(config: Config) -> int:
    """Show receipt statistics."""
    store = ReceiptStore(config.state_db_path)
    stats = store.get_stats()
    by_sync = stats["by_sync_status"]
    by_server = stats["by_server_status"]

    print("\n📊 Receipt Status")
    print("=" * 40)
    print(f"  Receipts total:         {stats['receipts_total']}")
    print(f"  Queued:                 {by_sync.get('queued', 0)}")
    print(f"  Uploading:              {by_sync.get('uploading', 0)}")
    print(f"  Uploaded:               {by_sync.get('uploaded', 0)}")
    print(f"  Failed:                 {by_sync.get('failed', 0)}")
    print(f"  Pending review:         {by_server.get('pending', 0)}")
    print(f"  Processed:              {by_server.get('processed', 0)}")
    print(f"  Rejected:               {by_server.get('rejected', 0)}")
    print(f"  Images cleaned up:      {stats['images_cleaned_up']}")
    print()

    return 0


def cmd_cleanup(config: Config, retention_days: int | None) -> int:
    """Apply the retention window to local images."""

    async def run() -> int:
        async with SyncEngine.from_config(config) as engine:
            if retention_days is not None:
                try:
                    engine.retention.set_retention_days(retention_days)
                except ValueError as e:
                    print(f"❌ {e}")
                    return 1
            result = engine.perform_cleanup()

        print(f"🧹 Cleaned images of {result.images_cleaned} receipts")
        if result.receipts_purged:
            print(f"   Purged {result.receipts_purged} receipts")
        if result.orphans_removed:
            print(f"   Removed {result.orphans_removed} orphaned directories")
        for error in result.errors:
            print(f"   - {error}")
        return 0 if result.success else 1

    return asyncio.run(run())


def cmd_fetch_remote(config: Config, account_id: str) -> int:
    """Mirror an account's receipts from the server."""
    print(f"🌐 Fetching receipts for account {account_id}...")

    async def run() -> int:
        async with SyncEngine.from_config(config) as engine:
            result = await engine.fetch_remote_receipts(account_id)
            if result.success:
                engine.set_last_account_id(account_id)

        print(f"   Created: {result.created}")
        print(f"   Updated: {result.updated}")
        print(f"   Removed: {result.removed}")
        for error in result.errors:
            print(f"   - {error}")
        return 0 if result.success else 1

    return asyncio.run(run())


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
        errors = config.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    try:
        if parsed.command == "import":
            return cmd_import(
                config, parsed.files, parsed.account, parsed.note, parsed.trip_id
            )
        elif parsed.command == "sync":
            return cmd_sync(config)
        elif parsed.command == "retry":
            return cmd_retry(config, parsed.receipt_id)
        elif parsed.command == "status":
            return cmd_status(config)
        elif parsed.command == "cleanup":
            return cmd_cleanup(config, parsed.retention_days)
        elif parsed.command == "fetch-remote":
            return cmd_fetch_remote(config, parsed.account)
        else:
            parser.print_help()
            return 1
    except ReceiptAPIClientError as e:
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
