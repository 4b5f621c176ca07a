"""SQL schema for the entry database."""

import sqlite3
from datetime import datetime, timezone

# Timestamps are stored as UTC text in one fixed-width form, so range filters
# and ORDER BY can compare them as strings.
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def format_timestamp(dt: datetime) -> str:
    """Convert a datetime to the stored UTC text form.

    Naive datetimes are taken to be local time.
    """
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp into an aware UTC datetime."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# Entries and their tags. Entry ids are UUID strings so that rows created on
# different devices never collide.
SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    timestamp DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    message TEXT NOT NULL,
    hostname TEXT NOT NULL,
    username TEXT NOT NULL,
    working_directory TEXT NOT NULL,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    FOREIGN KEY (entry_id) REFERENCES entries(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_timestamp ON entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_tags_entry ON tags(entry_id);
CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag);
"""

# Full-text index over entry messages, maintained by triggers. It is a
# standalone FTS5 table keyed by entry id rather than an external-content
# table, because entries has no stable integer rowid to point at.
FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
    entry_id UNINDEXED,
    message,
    tokenize = 'unicode61'
);

CREATE TRIGGER IF NOT EXISTS entries_fts_ai AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(entry_id, message) VALUES (new.id, new.message);
END;

CREATE TRIGGER IF NOT EXISTS entries_fts_ad AFTER DELETE ON entries BEGIN
    DELETE FROM entries_fts WHERE entry_id = old.id;
END;

CREATE TRIGGER IF NOT EXISTS entries_fts_au AFTER UPDATE OF id, message ON entries BEGIN
    DELETE FROM entries_fts WHERE entry_id = old.id;
    INSERT INTO entries_fts(entry_id, message) VALUES (new.id, new.message);
END;
"""

# Every FTS object this or an earlier schema version may have created.
FTS_OBJECTS = (
    ("TRIGGER", "entries_fts_ai"),
    ("TRIGGER", "entries_fts_ad"),
    ("TRIGGER", "entries_fts_au"),
    ("TRIGGER", "entries_ai"),
    ("TRIGGER", "entries_ad"),
    ("TRIGGER", "entries_au"),
    ("TABLE", "entries_fts"),
)


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create tables, indexes and the full-text index if missing."""
    conn.executescript(SCHEMA)
    conn.executescript(FTS_SCHEMA)


def drop_fts_index(conn: sqlite3.Connection) -> None:
    """Drop the full-text table and its maintenance triggers.

    Safe to call inside an open transaction.
    """
    for kind, name in FTS_OBJECTS:
        conn.execute(f"DROP {kind} IF EXISTS {name}")


def rebuild_fts_index(conn: sqlite3.Connection) -> int:
    """Repopulate the full-text index from the entries table.

    Returns:
        Number of messages indexed.
    """
    conn.execute("DELETE FROM entries_fts")
    cursor = conn.execute(
        "INSERT INTO entries_fts(entry_id, message) SELECT id, message FROM entries"
    )
    return cursor.rowcount
