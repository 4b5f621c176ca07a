"""Local SQLite storage for log entries and their tags."""

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import ValidationError
from .migration import migrate_if_needed
from .schema import ensure_schema, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

# Stored timestamps are UTC text in this format. It sorts lexically and is
# compatible with the CURRENT_TIMESTAMP values written by older databases.
_ENTRY_COLUMNS = "e.id, e.timestamp, e.message, e.hostname, e.username, e.working_directory"


@dataclass
class Entry:
    """A single logged activity."""

    message: str
    id: str = ""
    timestamp: datetime | None = None
    hostname: str = ""
    username: str = ""
    working_directory: str = ""
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display and JSON output."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "message": self.message,
            "hostname": self.hostname,
            "username": self.username,
            "working_directory": self.working_directory,
            "tags": list(self.tags),
        }


@dataclass
class SearchFilter:
    """Search criteria. All given dimensions must match.

    ``tags`` matches entries carrying at least one of the listed tags.
    ``since`` and ``until`` are inclusive.
    """

    text: str = ""
    tags: list[str] = field(default_factory=list)
    since: datetime | None = None
    until: datetime | None = None
    limit: int = 0  # 0 means unlimited


def _validate_message(message: str) -> None:
    if not message or not message.strip():
        raise ValidationError("entry message must not be empty")


def _normalize_tags(tags: list[str] | None) -> list[str]:
    """Drop empty tags and duplicates, keeping first-seen order."""
    seen: dict[str, None] = {}
    for tag in tags or []:
        if tag and tag not in seen:
            seen[tag] = None
    return list(seen)


def build_match_query(text: str) -> str:
    """Turn free user text into an FTS5 query.

    Every whitespace-separated token is quoted, so punctuation cannot be read
    as FTS syntax, and prefix-matched. Tokens are AND'd.
    """
    tokens = text.split()
    return " ".join('"' + token.replace('"', '""') + '"*' for token in tokens)


class EntryStore:
    """SQLite-backed store of entries, tags and their full-text index.

    One connection serves every reader and writer in the process. Writes go
    through ``transaction()``, which serializes them with a lock, so an entry
    and its tags always become visible together.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the entry store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    def connect(self) -> None:
        """Open the database, migrate a legacy schema and ensure tables exist."""
        if self._conn is not None:
            return

        if not self.in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: transaction() issues BEGIN/COMMIT itself.
        conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        conn.row_factory = sqlite3.Row

        try:
            if not self.in_memory:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")

            if migrate_if_needed(conn):
                logger.info(f"Upgraded {self.db_path} to UUID entry ids")

            ensure_schema(conn)
            conn.execute("PRAGMA foreign_keys = ON")
        except Exception:
            conn.close()
            raise

        self._conn = conn
        logger.info(f"EntryStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("EntryStore connection closed")

    def __enter__(self) -> "EntryStore":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    @property
    def connection(self) -> sqlite3.Connection:
        """The underlying connection, shared with the sync queue."""
        return self._ensure_connected()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock for a block of reads."""
        conn = self._ensure_connected()
        with self._lock:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction.

        Nested scopes join the outermost one; only the outermost commits or
        rolls back.
        """
        conn = self._ensure_connected()
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                self._depth = 0

    # ==================== Write Operations ====================

    def create_entry(self, entry: Entry) -> str:
        """Insert an entry and its tags atomically.

        An id is generated when the entry has none. Creating an entry whose
        id already exists is a no-op, so replays by known id are safe.

        Args:
            entry: Entry to store. Missing timestamp defaults to now.

        Returns:
            The entry id.

        Raises:
            ValidationError: If the message is empty.
        """
        _validate_message(entry.message)

        entry_id = entry.id or str(uuid.uuid4())
        timestamp = entry.timestamp or datetime.now(timezone.utc)
        tags = _normalize_tags(entry.tags)

        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO entries (
                    id, timestamp, message, hostname, username,
                    working_directory, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    entry_id,
                    format_timestamp(timestamp),
                    entry.message,
                    entry.hostname,
                    entry.username,
                    entry.working_directory,
                    format_timestamp(datetime.now(timezone.utc)),
                ),
            )
            if cursor.rowcount == 0:
                logger.debug(f"Entry {entry_id} already exists, create skipped")
                return entry_id

            conn.executemany(
                "INSERT INTO tags (entry_id, tag) VALUES (?, ?)",
                [(entry_id, tag) for tag in tags],
            )

        logger.debug(f"Created entry {entry_id} with {len(tags)} tags")
        return entry_id

    def upsert_entry(self, entry: Entry) -> None:
        """Insert an entry or overwrite the existing one with the same id.

        Every mutable field is overwritten and the tag set is replaced
        wholesale: existing tag rows are deleted and the given tags inserted
        fresh. Applying the same entry twice leaves the same state.

        Raises:
            ValidationError: If the id or message is missing.
        """
        if not entry.id:
            raise ValidationError("upsert requires an entry id")
        _validate_message(entry.message)

        timestamp = entry.timestamp or datetime.now(timezone.utc)
        tags = _normalize_tags(entry.tags)

        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO entries (
                    id, timestamp, message, hostname, username,
                    working_directory, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    timestamp = excluded.timestamp,
                    message = excluded.message,
                    hostname = excluded.hostname,
                    username = excluded.username,
                    working_directory = excluded.working_directory
                """,
                (
                    entry.id,
                    format_timestamp(timestamp),
                    entry.message,
                    entry.hostname,
                    entry.username,
                    entry.working_directory,
                    format_timestamp(datetime.now(timezone.utc)),
                ),
            )
            conn.execute("DELETE FROM tags WHERE entry_id = ?", (entry.id,))
            conn.executemany(
                "INSERT INTO tags (entry_id, tag) VALUES (?, ?)",
                [(entry.id, tag) for tag in tags],
            )

    def delete_entry(self, entry_id: str) -> bool:
        """Delete an entry. Its tags and index row go with it.

        Returns:
            True if an entry was removed, False if none had that id.
        """
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
        return cursor.rowcount > 0

    def delete_all_entries(self) -> int:
        """Remove every entry and tag.

        Returns:
            Number of entries deleted.
        """
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM entries")
            conn.execute("DELETE FROM tags")
        return cursor.rowcount

    # ==================== Read Operations ====================

    def get_entry(self, entry_id: str) -> Entry | None:
        """Fetch a single entry with its tags."""
        with self.reading() as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM entries e WHERE e.id = ?",
                (entry_id,),
            ).fetchone()
            if row is None:
                return None
            tags = self._load_tags(conn, [entry_id])

        entry = self._row_to_entry(row)
        entry.tags = tags.get(entry_id, [])
        return entry

    def list_entries(self, limit: int = 20) -> list[Entry]:
        """Return the most recent entries, newest first."""
        if limit <= 0:
            raise ValidationError("limit must be positive")
        return self.search_entries(SearchFilter(limit=limit))

    def search_entries(self, search: SearchFilter) -> list[Entry]:
        """Find entries matching every dimension of the filter.

        Text is matched through the full-text index, tags by membership in
        any of the requested tags, and the time range inclusively. Results
        are ordered newest first and truncated to ``search.limit``.
        """
        query = f"SELECT {_ENTRY_COLUMNS} FROM entries e"
        conditions: list[str] = []
        args: list[Any] = []

        match = build_match_query(search.text) if search.text else ""
        if match:
            conditions.append(
                "e.id IN (SELECT entry_id FROM entries_fts WHERE entries_fts MATCH ?)"
            )
            args.append(match)

        if search.tags:
            placeholders = ",".join("?" * len(search.tags))
            conditions.append(
                f"e.id IN (SELECT entry_id FROM tags WHERE tag IN ({placeholders}))"
            )
            args.extend(search.tags)

        if search.since is not None:
            conditions.append("e.timestamp >= ?")
            args.append(format_timestamp(search.since))
        if search.until is not None:
            conditions.append("e.timestamp <= ?")
            args.append(format_timestamp(search.until))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY e.timestamp DESC, e.id"

        if search.limit > 0:
            query += " LIMIT ?"
            args.append(search.limit)

        with self.reading() as conn:
            rows = conn.execute(query, args).fetchall()
            entries = [self._row_to_entry(row) for row in rows]
            if entries:
                tags = self._load_tags(conn, [e.id for e in entries])
                for entry in entries:
                    entry.tags = tags.get(entry.id, [])

        return entries

    def _load_tags(
        self, conn: sqlite3.Connection, entry_ids: list[str]
    ) -> dict[str, list[str]]:
        """Load tags for many entries in a single query.

        The ids travel as one JSON parameter so the statement count does not
        grow with the number of entries.
        """
        cursor = conn.execute(
            """
            SELECT entry_id, tag FROM tags
            WHERE entry_id IN (SELECT value FROM json_each(?))
            ORDER BY entry_id, tag
            """,
            (json.dumps(entry_ids),),
        )

        tags: dict[str, list[str]] = {}
        for row in cursor:
            tags.setdefault(row["entry_id"], []).append(row["tag"])
        return tags

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> Entry:
        return Entry(
            id=row["id"],
            timestamp=parse_timestamp(row["timestamp"]),
            message=row["message"],
            hostname=row["hostname"],
            username=row["username"],
            working_directory=row["working_directory"],
        )

    def count_entries(self) -> int:
        with self.reading() as conn:
            return conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    def get_stats(self) -> dict[str, Any]:
        """Get database statistics.

        Returns:
            Dictionary with entry and tag counts and database size.
        """
        with self.reading() as conn:
            stats = {
                "entries_count": conn.execute(
                    "SELECT COUNT(*) FROM entries"
                ).fetchone()[0],
                "tags_count": conn.execute("SELECT COUNT(*) FROM tags").fetchone()[0],
                "distinct_tags": conn.execute(
                    "SELECT COUNT(DISTINCT tag) FROM tags"
                ).fetchone()[0],
            }

        if not self.in_memory and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
