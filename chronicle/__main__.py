"""CLI entry point for Chronicle."""

import argparse
import asyncio
import inspect
import json
import logging
import sqlite3
import sys
import traceback
import uuid
from datetime import datetime
from pathlib import Path

from .config import Config, load_config, save_config
from .errors import ChronicleError, SyncNotConfiguredError
from .service import add_entry, delete_entry
from .store import EntryStore, SearchFilter, repair_database, reset_database
from .store.entries import Entry
from .sync import SyncEvents, SyncResult, Syncer, generate_secret

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable info logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.WARNING)
    else:
        level = logging.INFO if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _parse_date(value: str) -> datetime:
    """argparse type for ISO-8601 dates. Naive values are local time."""
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO date: {value!r}")


def _open_store(config: Config) -> EntryStore:
    store = EntryStore(config.storage.resolved_path())
    store.connect()
    return store


def _build_syncer(config: Config, store: EntryStore, config_path: Path | None) -> Syncer | None:
    """Build a syncer when login has stored credentials, else None."""
    if not config.sync.is_configured():
        return None

    def persist(_sync_config) -> None:
        save_config(config, config_path)

    try:
        return Syncer(config.sync, store, on_token_refresh=persist)
    except SyncNotConfiguredError as e:
        logger.warning(f"Sync disabled: {e}")
        return None


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        print(f"Warning: {warning}", file=sys.stderr)


def _print_sync_result(result: SyncResult) -> None:
    if result.ok:
        print(f"Sync complete: pushed {result.entries_pushed}, pulled {result.entries_pulled}")
        return
    print(f"Sync {result.status.value}: {result.error}", file=sys.stderr)
    if result.hint:
        print(f"Hint: {result.hint}", file=sys.stderr)


def _print_entries(entries: list[Entry], as_json: bool) -> None:
    if as_json:
        print(json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False))
        return

    if not entries:
        print("No entries found.")
        return

    for entry in entries:
        timestamp = entry.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        tags = f" [{', '.join(entry.tags)}]" if entry.tags else ""
        print(f"{entry.id}  {timestamp}{tags}  {entry.message}")


def _confirm(prompt: str, expected: tuple[str, ...]) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in expected


# ==================== Entry Commands ====================


async def cmd_add(args: argparse.Namespace) -> int:
    """Add a log entry."""
    config = load_config(args.config)

    with _open_store(config) as store:
        syncer = _build_syncer(config, store, args.config)
        result = await add_entry(store, args.message, tags=args.tag, syncer=syncer)

        print(f"Entry created (ID: {result.entry.id})")
        if result.project_log_path:
            print(f"Project log updated: {result.project_log_path}")
        _print_warnings(result.warnings)

    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List recent entries."""
    config = load_config(args.config)

    with _open_store(config) as store:
        entries = store.list_entries(args.limit)

    _print_entries(entries, args.json)
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    """Search entries."""
    config = load_config(args.config)

    search = SearchFilter(
        text=args.text or "",
        tags=args.tag,
        since=args.since,
        until=args.until,
        limit=args.limit,
    )
    with _open_store(config) as store:
        entries = store.search_entries(search)

    _print_entries(entries, args.json)
    return 0


async def cmd_delete(args: argparse.Namespace) -> int:
    """Delete an entry."""
    config = load_config(args.config)

    with _open_store(config) as store:
        syncer = _build_syncer(config, store, args.config)
        result = await delete_entry(store, args.id, syncer=syncer)

    if not result.deleted:
        print(f"No entry with ID {args.id}")
        return 1

    print(f"Entry deleted (ID: {args.id})")
    _print_warnings(result.warnings)
    return 0


# ==================== Sync Commands ====================


def cmd_sync_status(args: argparse.Namespace) -> int:
    """Show sync status."""
    config = load_config(args.config)

    status_data = {
        "configured": config.sync.is_configured(),
        "server": config.sync.server or None,
        "user_id": config.sync.user_id or None,
        "device_id": config.sync.device_id or None,
        "auto_sync": config.sync.auto_sync,
    }

    if config.sync.is_configured():
        with _open_store(config) as store:
            syncer = _build_syncer(config, store, args.config)
            if syncer is not None:
                status_data.update(syncer.get_sync_status())

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    if not status_data["configured"]:
        print("Sync: not configured")
        print(f"Hint: {SyncNotConfiguredError.hint}")
        return 0

    print("Sync: configured")
    print(f"  Server:    {status_data['server']}")
    print(f"  User:      {status_data['user_id']}")
    print(f"  Device:    {status_data['device_id']}")
    print(f"  Auto-sync: {'on' if status_data['auto_sync'] else 'off'}")
    if "pending_changes" in status_data:
        print(f"  Pending:   {status_data['pending_changes']}")
        print(f"  Cursor:    {status_data['last_synced_seq']}")
    return 0


def cmd_sync_login(args: argparse.Namespace) -> int:
    """Store sync credentials for this device."""
    config = load_config(args.config)
    sync = config.sync

    sync.server = args.server
    sync.user_id = args.user_id
    sync.token = args.token
    if args.refresh_token:
        sync.refresh_token = args.refresh_token
    if args.auto_sync is not None:
        sync.auto_sync = args.auto_sync

    generated_key = False
    if args.key:
        sync.derived_key = args.key
    elif not sync.derived_key:
        sync.derived_key = generate_secret()
        generated_key = True

    if not sync.device_id:
        sync.device_id = str(uuid.uuid4())

    path = save_config(config, args.config)
    print(f"Sync configured for {sync.user_id} on {sync.server}")
    print(f"Device ID: {sync.device_id}")
    print(f"Config saved to {path}")
    if generated_key:
        print("Generated a new sync key. Use it on your other devices with --key:")
        print(f"  {sync.derived_key}")
    return 0


def _require_syncer(config: Config, store: EntryStore, config_path: Path | None) -> Syncer | None:
    syncer = _build_syncer(config, store, config_path)
    if syncer is None:
        print("Sync is not configured.", file=sys.stderr)
        print(f"Hint: {SyncNotConfiguredError.hint}", file=sys.stderr)
    return syncer


async def cmd_sync_now(args: argparse.Namespace) -> int:
    """Run a sync round."""
    config = load_config(args.config)

    events = SyncEvents(
        on_push=lambda n: print(f"Pushed {n} changes") if n else None,
        on_pull=lambda n: print(f"Pulled {n} changes") if n else None,
    )

    with _open_store(config) as store:
        syncer = _require_syncer(config, store, args.config)
        if syncer is None:
            return 1
        result = await syncer.sync(events=events, timeout=args.timeout)

    _print_sync_result(result)
    return 0 if result.ok else 1


def cmd_sync_pending(args: argparse.Namespace) -> int:
    """List changes waiting to be pushed."""
    config = load_config(args.config)

    with _open_store(config) as store:
        syncer = _require_syncer(config, store, args.config)
        if syncer is None:
            return 1
        pending = syncer.pending_changes(args.limit)
        total = syncer.pending_count()

    if args.json:
        print(json.dumps([
            {
                "change_id": p.change_id,
                "entity": p.entity,
                "entity_id": p.entity_id,
                "ts": p.ts.isoformat(),
            }
            for p in pending
        ], indent=2))
        return 0

    print(f"{total} pending changes")
    for item in pending:
        ts = item.ts.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        print(f"  {ts}  {item.entity}:{item.entity_id}")
    return 0


async def _reset_and_resync(config: Config, config_path: Path | None) -> int:
    removed = reset_database(config.storage.resolved_path())
    print(f"Removed {len(removed)} database files")

    with _open_store(config) as store:
        syncer = _build_syncer(config, store, config_path)
        if syncer is None:
            print("Sync not configured; started with an empty database.")
            return 0
        result = await syncer.reset_from_remote()

    _print_sync_result(result)
    return 0 if result.ok else 1


async def cmd_sync_repair(args: argparse.Namespace) -> int:
    """Repair database corruption."""
    config = load_config(args.config)
    db_path = config.storage.resolved_path()

    print("Repairing chronicle database...")
    result = repair_database(db_path, force=args.force)

    if result.wal_checkpointed:
        print("  ✓ WAL checkpointed")
    if result.shm_removed:
        print("  ✓ SHM file removed")
    print("  ✓ Integrity check passed" if result.integrity_ok else "  ✗ Integrity check failed")
    if result.vacuumed:
        print("  ✓ Database vacuumed")
    if result.recovery_attempted:
        print("  ! Recovery attempted")
    if result.fts_rebuilt:
        print("  ✓ Search index rebuilt")
    for error in result.errors:
        print(f"    {error}", file=sys.stderr)

    if result.integrity_ok:
        print("Repair complete.")
        return 0
    if not args.force:
        print("Repair incomplete. Run with --force to attempt recovery.")
        return 1
    if config.sync.is_configured():
        print("Recovery failed, resetting from remote...")
        return await _reset_and_resync(config, args.config)

    print("Repair failed. Database may be unrecoverable.", file=sys.stderr)
    return 1


async def cmd_sync_reset(args: argparse.Namespace) -> int:
    """Delete the local database and re-sync from the remote."""
    config = load_config(args.config)

    if not args.yes:
        print("This will delete all local chronicle data and re-sync from the server.")
        if not _confirm("Continue? [y/N]: ", ("y", "yes")):
            print("Aborted.")
            return 1

    return await _reset_and_resync(config, args.config)


async def cmd_sync_wipe(args: argparse.Namespace) -> int:
    """Delete all data locally and on the server."""
    config = load_config(args.config)

    if not args.yes:
        print("This will DELETE all chronicle data, locally and on the server.")
        print("THIS CANNOT BE UNDONE!")
        if not _confirm("Type 'wipe' to confirm: ", ("wipe",)):
            print("Aborted.")
            return 1

    with _open_store(config) as store:
        syncer = _require_syncer(config, store, args.config)
        if syncer is None:
            return 1
        deleted = await syncer.wipe(delete_local=True)

    print(f"Server records deleted: {deleted}")
    print("Wipe complete.")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="chronicle",
        description="Timestamped logging tool",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: $XDG_CONFIG_HOME/chronicle/config.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # add
    add_parser = subparsers.add_parser("add", aliases=["a"], help="Add a log entry")
    add_parser.add_argument("message", help="Entry message")
    add_parser.add_argument(
        "-t", "--tag",
        action="append",
        default=[],
        help="Add a tag (repeatable)",
    )
    add_parser.set_defaults(func=cmd_add)

    # list
    list_parser = subparsers.add_parser("list", help="List recent entries")
    list_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of entries to show (default: 20)",
    )
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_list)

    # search
    search_parser = subparsers.add_parser("search", help="Search entries")
    search_parser.add_argument("text", nargs="?", help="Text to search for")
    search_parser.add_argument(
        "-t", "--tag",
        action="append",
        default=[],
        help="Filter by tag (repeatable, any matches)",
    )
    search_parser.add_argument("--since", type=_parse_date, help="Start date (ISO-8601)")
    search_parser.add_argument("--until", type=_parse_date, help="End date (ISO-8601)")
    search_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=100,
        help="Maximum results (default: 100)",
    )
    search_parser.add_argument("--json", action="store_true", help="Output as JSON")
    search_parser.set_defaults(func=cmd_search)

    # delete
    delete_parser = subparsers.add_parser("delete", help="Delete an entry")
    delete_parser.add_argument("id", help="Entry ID")
    delete_parser.set_defaults(func=cmd_delete)

    # Sync commands
    sync_parser = subparsers.add_parser("sync", help="Manage multi-device sync")
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")

    # sync status
    sync_status = sync_subparsers.add_parser("status", help="Show sync status")
    sync_status.add_argument("--json", action="store_true", help="Output status as JSON")
    sync_status.set_defaults(func=cmd_sync_status)

    # sync login
    sync_login = sync_subparsers.add_parser("login", help="Configure sync for this device")
    sync_login.add_argument("--server", required=True, help="Sync server URL")
    sync_login.add_argument("--user-id", required=True, help="Account ID")
    sync_login.add_argument("--token", required=True, help="Bearer token")
    sync_login.add_argument("--refresh-token", default="", help="Refresh token")
    sync_login.add_argument(
        "--key",
        default="",
        help="Existing sync key from another device (default: generate one)",
    )
    sync_login.add_argument(
        "--auto-sync",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Sync after every add/delete",
    )
    sync_login.set_defaults(func=cmd_sync_login)

    # sync now
    sync_now = sync_subparsers.add_parser("now", help="Push and pull changes")
    sync_now.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Round deadline in seconds (default: from config)",
    )
    sync_now.set_defaults(func=cmd_sync_now)

    # sync pending
    sync_pending = sync_subparsers.add_parser("pending", help="List changes waiting to sync")
    sync_pending.add_argument("-n", "--limit", type=int, default=20, help="Maximum rows")
    sync_pending.add_argument("--json", action="store_true", help="Output as JSON")
    sync_pending.set_defaults(func=cmd_sync_pending)

    # sync repair
    sync_repair = sync_subparsers.add_parser("repair", help="Repair database corruption")
    sync_repair.add_argument(
        "-f", "--force",
        action="store_true",
        help="Attempt recovery, and reset from the server if that fails",
    )
    sync_repair.set_defaults(func=cmd_sync_repair)

    # sync reset
    sync_reset = sync_subparsers.add_parser("reset", help="Reset local database from the server")
    sync_reset.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    sync_reset.set_defaults(func=cmd_sync_reset)

    # sync wipe
    sync_wipe = sync_subparsers.add_parser("wipe", help="Delete all data locally and on the server")
    sync_wipe.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    sync_wipe.set_defaults(func=cmd_sync_wipe)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "sync" and not args.sync_command:
        sync_parser.print_help()
        return 1

    func = args.func
    try:
        if inspect.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except (ChronicleError, sqlite3.Error, OSError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
