# =============================================================================
# mailsync Command Line
# =============================================================================
# Thin CLI over SyncService and the storage layer:
#
#   mailsync sync personal             Sync the recommended folders
#   mailsync sync personal -f INBOX    Sync one folder
#   mailsync test personal             Check server and credentials
#   mailsync folders personal          Show folders and recommendations
#   mailsync stats personal            Stored message counts
#   mailsync migrate personal          Re-file stored messages
#
# Accounts come from the config file ([accounts.<id>] sections).
# =============================================================================

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from mailsync import __app_name__, __version__
from mailsync.config import Config, ConfigError, print_paths
from mailsync.core import Account, SyncStatus
from mailsync.folders import detect_spam_folders, folder_recommendations
from mailsync.imap import ConnectionManager, IMAPError, ProgressTracker, SyncOptions
from mailsync.migration import FolderMigration
from mailsync.security import EncryptionError, load_cipher
from mailsync.service import SyncService
from mailsync.storage import Database, Repository
from mailsync.storage.repository import GROUPABLE_DIMENSIONS

logger = logging.getLogger(__name__)


# =============================================================================
# Commands
# =============================================================================

async def _open_repository(config: Config) -> Repository:
    db = Database()
    await db.connect()
    return Repository(db, load_cipher(config.security.encryption_key))


def _sync_options(args: argparse.Namespace, config: Config) -> SyncOptions:
    """Merge command-line flags over the [sync] defaults."""
    defaults = config.sync
    if args.all_folders:
        folders: list[str] | None = []
    else:
        folders = args.folder or None

    limit = defaults.limit if args.limit is None else args.limit
    return SyncOptions(
        folders=folders,
        include_spam=defaults.include_spam and not args.no_spam,
        limit=limit or None,
        strategy=args.strategy or defaults.strategy,
        continue_on_error=defaults.continue_on_error and not args.stop_on_error,
        max_concurrency=args.concurrency or defaults.max_concurrency,
        fetch_body=defaults.fetch_body and not args.headers_only,
        batch_size=defaults.batch_size,
        clear_existing=args.clear,
    )


async def cmd_sync(args: argparse.Namespace, config: Config, account: Account) -> int:
    repo = await _open_repository(config)
    tracker = ProgressTracker(config.progress.success_grace, config.progress.error_grace)
    service = SyncService(ConnectionManager(), tracker, repo)

    try:
        response = service.start_sync(account, _sync_options(args, config))
        updates = tracker.subscribe(response.session_id)
        while (session := await updates.get()) is not None:
            print(
                f"\r[{session.percent_complete:5.1f}%] "
                f"{session.folders_done}/{session.folders_planned} folders, "
                f"{session.messages_done}/{session.messages_planned} messages  "
                f"{session.current_folder[:40]:<40}",
                end="",
                flush=True,
            )
        print()

        final = await service.wait(response.session_id)
    finally:
        await service.shutdown()
        await repo.db.close()

    if final is None:
        return 1
    print(final.message)
    for error in final.errors:
        print(f"  ! {error}")
    return 0 if final.status is SyncStatus.COMPLETED else 1


async def cmd_test(args: argparse.Namespace, config: Config, account: Account) -> int:
    result = await ConnectionManager().test_connection(account)
    print(f"{account}: {result.message}")
    return 0 if result else 1


async def cmd_folders(args: argparse.Namespace, config: Config, account: Account) -> int:
    connections = ConnectionManager()
    try:
        async with connections.lease(account) as client:
            discovered = await client.list_folders()
    finally:
        await connections.close_all()

    if args.spam:
        for name in detect_spam_folders(discovered):
            print(name)
        return 0

    for rec in folder_recommendations(discovered):
        mark = "*" if rec.should_sync else " "
        print(
            f"{mark} {rec.folder:<40} {rec.category.value:<8} "
            f"{rec.confidence:.2f}  {rec.reason}"
        )
    return 0


async def cmd_stats(args: argparse.Namespace, config: Config, account: Account) -> int:
    repo = await _open_repository(config)
    try:
        groups = await repo.count_grouped_by(account.id, args.by)
        total = await repo.count(account.id)
    finally:
        await repo.db.close()

    for group in groups:
        labels = "  ".join(str(group[dim]) for dim in args.by)
        print(f"{group['count']:>8}  {labels}")
    print(f"{total:>8}  total")
    return 0


async def cmd_migrate(args: argparse.Namespace, config: Config, account: Account) -> int:
    repo = await _open_repository(config)
    migration = FolderMigration(repo)
    try:
        if args.preview:
            preview = await migration.preview(account.id)
            for item in preview.folders:
                arrow = "->" if item.changes else "=="
                print(
                    f"{item.count:>8}  {item.original_folder:<40} "
                    f"{item.current_folder} {arrow} {item.standard_folder} "
                    f"({item.confidence:.2f})"
                )
            return 0
        result = await migration.migrate(account.id)
    finally:
        await repo.db.close()

    print(f"{result.migrated} migrated, {result.skipped} unchanged of {result.total_messages}")
    return 0


COMMANDS = {
    "sync": cmd_sync,
    "test": cmd_test,
    "folders": cmd_folders,
    "stats": cmd_stats,
    "migrate": cmd_migrate,
}


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="mailsync: multi-folder IMAP mailbox sync",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sync = sub.add_parser("sync", help="Sync an account's folders")
    sync.add_argument("account", help="Account id from the config file")
    sync.add_argument("-f", "--folder", action="append", help="Folder to sync (repeatable)")
    sync.add_argument("--all-folders", action="store_true", help="Sync every selectable folder")
    sync.add_argument("--limit", type=int, help="Most recent messages per folder (0 = all)")
    sync.add_argument("--strategy", choices=("sequential", "parallel"))
    sync.add_argument("--concurrency", type=int, help="Parallel folder workers (1-10)")
    sync.add_argument("--no-spam", action="store_true", help="Leave spam folders out")
    sync.add_argument("--headers-only", action="store_true", help="Skip message bodies")
    sync.add_argument("--stop-on-error", action="store_true", help="Abort on the first failed folder")
    sync.add_argument("--clear", action="store_true", help="Delete stored messages first")

    test = sub.add_parser("test", help="Test the connection to an account")
    test.add_argument("account")

    folders = sub.add_parser("folders", help="List folders with sync recommendations")
    folders.add_argument("account")
    folders.add_argument("--spam", action="store_true", help="Only show detected spam folders")

    stats = sub.add_parser("stats", help="Count stored messages")
    stats.add_argument("account")
    stats.add_argument(
        "--by",
        nargs="+",
        default=["standard_folder"],
        choices=sorted(GROUPABLE_DIMENSIONS),
        help="Columns to group by",
    )

    migrate = sub.add_parser("migrate", help="Re-file stored messages by folder label")
    migrate.add_argument("account")
    migrate.add_argument("--preview", action="store_true", help="Show changes without applying")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailsync.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    # Handle --paths flag
    if args.paths:
        print_paths()
        return 0

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.debug else config.general.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        print("No command given, see --help", file=sys.stderr)
        return 2

    account = config.accounts.get(args.account)
    if account is None:
        print(f"Unknown account: {args.account}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(COMMANDS[args.command](args, config, account))
    except (IMAPError, EncryptionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
