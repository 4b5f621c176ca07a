"""The write boundary used by the command line.

The store write is authoritative and commits first. Mirroring to a project
log and queueing for sync happen afterwards; their failures are reported as
warnings on the result and never undo the write.
"""

import getpass
import logging
import os
import socket
import sqlite3
import tomllib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .errors import ChronicleError
from .project_log import mirror_entry
from .store.entries import Entry, EntryStore
from .sync.change import Op
from .sync.syncer import Syncer, SyncResult

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


@dataclass
class AddResult:
    entry: Entry
    project_log_path: Path | None = None
    sync_result: SyncResult | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class DeleteResult:
    entry_id: str
    deleted: bool
    sync_result: SyncResult | None = None
    warnings: list[str] = field(default_factory=list)


def capture_metadata(cwd: str | Path | None = None) -> tuple[str, str, str]:
    """Return (hostname, username, working_directory), "unknown" when unavailable."""
    hostname = socket.gethostname() or UNKNOWN

    try:
        username = getpass.getuser() or UNKNOWN
    except (KeyError, OSError):
        username = UNKNOWN

    if cwd is not None:
        working_directory = str(cwd)
    else:
        try:
            working_directory = os.getcwd()
        except OSError:
            working_directory = UNKNOWN

    return hostname, username, working_directory


async def _queue(
    syncer: Syncer, entry: Entry, op: Op, warnings: list[str]
) -> SyncResult | None:
    try:
        result = await syncer.queue_entry_change(entry, op)
    except (sqlite3.Error, ChronicleError) as e:
        logger.warning(f"Failed to queue {op.value} of {entry.id}: {e}")
        warnings.append(f"failed to queue for sync: {e}")
        return None
    except Exception as e:
        # The entry is already committed; sync must not fail the write
        logger.exception(f"Sync after {op.value} of {entry.id} failed")
        warnings.append(f"sync failed: {e}")
        return None

    if result is not None and not result.ok:
        message = f"auto-sync {result.status.value}: {result.error}"
        if result.hint:
            message += f" ({result.hint})"
        warnings.append(message)
    return result


async def add_entry(
    store: EntryStore,
    message: str,
    tags: list[str] | None = None,
    syncer: Syncer | None = None,
    cwd: str | Path | None = None,
    timestamp: datetime | None = None,
) -> AddResult:
    """Create an entry, then mirror it and queue it for sync.

    Raises:
        ValidationError: If the message is empty. Nothing is written.
        sqlite3.Error: If the store write fails.
    """
    hostname, username, working_directory = capture_metadata(cwd)
    entry_id = store.create_entry(
        Entry(
            message=message,
            timestamp=timestamp,
            hostname=hostname,
            username=username,
            working_directory=working_directory,
            tags=list(tags or []),
        )
    )
    entry = store.get_entry(entry_id)
    result = AddResult(entry=entry)

    if working_directory != UNKNOWN:
        try:
            result.project_log_path = mirror_entry(entry, working_directory)
        except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to write project log: {e}")
            result.warnings.append(f"failed to write project log: {e}")

    if syncer is not None:
        result.sync_result = await _queue(syncer, entry, Op.UPSERT, result.warnings)

    return result


async def delete_entry(
    store: EntryStore,
    entry_id: str,
    syncer: Syncer | None = None,
) -> DeleteResult:
    """Delete an entry locally and queue the deletion.

    A missing entry is not an error; nothing is queued for it.
    """
    deleted = store.delete_entry(entry_id)
    result = DeleteResult(entry_id=entry_id, deleted=deleted)

    if deleted and syncer is not None:
        result.sync_result = await _queue(
            syncer, Entry(message="", id=entry_id), Op.DELETE, result.warnings
        )

    return result
