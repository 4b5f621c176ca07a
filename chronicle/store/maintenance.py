"""Administrative repair and reset of the entry database.

These helpers open their own raw connection, so they still work when the
database is too damaged for ``EntryStore.connect()``. They are never used
on the normal read/write path.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from .schema import drop_fts_index, ensure_schema, rebuild_fts_index

logger = logging.getLogger(__name__)

_SIDE_FILE_SUFFIXES = ("-wal", "-shm")


@dataclass
class RepairResult:
    """Outcome of each repair step."""

    wal_checkpointed: bool = False
    shm_removed: bool = False
    integrity_ok: bool = False
    vacuumed: bool = False
    recovery_attempted: bool = False
    fts_rebuilt: bool = False
    errors: list[str] = field(default_factory=list)


def _open(db_path: Path) -> sqlite3.Connection:
    return sqlite3.connect(str(db_path), isolation_level=None)


def _integrity_ok(conn: sqlite3.Connection) -> tuple[bool, list[str]]:
    rows = [row[0] for row in conn.execute("PRAGMA integrity_check").fetchall()]
    return rows == ["ok"], [r for r in rows if r != "ok"]


def repair_database(db_path: str | Path, force: bool = False) -> RepairResult:
    """Checkpoint, integrity-check and vacuum the database.

    Args:
        db_path: Path to the entry database.
        force: When the integrity check fails, drop and rebuild the
            full-text index and check again.

    Returns:
        RepairResult describing which steps succeeded.

    Raises:
        FileNotFoundError: If there is no database at ``db_path``.
    """
    path = Path(db_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"No database at {path}")

    result = RepairResult()

    conn = _open(path)
    try:
        busy, _, _ = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
        result.wal_checkpointed = busy == 0
    except sqlite3.DatabaseError as e:
        result.errors.append(f"checkpoint: {e}")
    finally:
        conn.close()

    shm = path.with_name(path.name + "-shm")
    if shm.exists():
        shm.unlink()
        result.shm_removed = True

    conn = _open(path)
    try:
        try:
            result.integrity_ok, problems = _integrity_ok(conn)
            result.errors.extend(problems)
        except sqlite3.DatabaseError as e:
            result.errors.append(f"integrity_check: {e}")

        if not result.integrity_ok and force:
            result.recovery_attempted = True
            logger.warning(f"Integrity check failed for {path}, rebuilding index")
            try:
                conn.execute("BEGIN IMMEDIATE")
                drop_fts_index(conn)
                conn.execute("COMMIT")
                ensure_schema(conn)
                rebuild_fts_index(conn)
                result.fts_rebuilt = True
                result.integrity_ok, problems = _integrity_ok(conn)
                result.errors.extend(problems)
            except sqlite3.DatabaseError as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                result.errors.append(f"recovery: {e}")

        if result.integrity_ok:
            conn.execute("VACUUM")
            result.vacuumed = True
    finally:
        conn.close()

    logger.info(f"Repair of {path} finished: integrity_ok={result.integrity_ok}")
    return result


def reset_database(db_path: str | Path) -> list[Path]:
    """Delete the database file and its WAL/SHM side files.

    Returns:
        The files that were removed.
    """
    path = Path(db_path).expanduser()
    removed = []
    for candidate in [path, *(path.with_name(path.name + s) for s in _SIDE_FILE_SUFFIXES)]:
        if candidate.exists():
            candidate.unlink()
            removed.append(candidate)

    logger.info(f"Reset database at {path}, removed {len(removed)} files")
    return removed
