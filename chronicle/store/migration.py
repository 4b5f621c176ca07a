"""One-time migration from integer to UUID primary keys.

The first version of the entry database used ``INTEGER PRIMARY KEY
AUTOINCREMENT`` ids. Those are only unique per device and collide as soon as
two devices' histories are merged, so entries are re-keyed with UUIDs.

SQLite cannot change a primary key's type in place. The migration builds
shadow tables with TEXT keys, copies every row across under a fresh id,
drops the old tables and renames the shadows into place, all inside one
transaction. Timestamps are rewritten in the store's UTC text form on the
way. The full-text index is rebuilt after commit.
"""

import logging
import sqlite3
import uuid

from ..errors import MigrationError
from .schema import (
    drop_fts_index,
    ensure_schema,
    format_timestamp,
    parse_timestamp,
    rebuild_fts_index,
)

logger = logging.getLogger(__name__)

_CREATE_ENTRIES_NEW = """
CREATE TABLE entries_new (
    id TEXT PRIMARY KEY,
    timestamp DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    message TEXT NOT NULL,
    hostname TEXT NOT NULL,
    username TEXT NOT NULL,
    working_directory TEXT NOT NULL,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""

_CREATE_TAGS_NEW = """
CREATE TABLE tags_new (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    FOREIGN KEY (entry_id) REFERENCES entries_new(id) ON DELETE CASCADE
)
"""


def needs_uuid_migration(conn: sqlite3.Connection) -> bool:
    """Check whether the entries table still uses an integer id.

    Returns False when the table does not exist yet.
    """
    row = conn.execute(
        "SELECT type FROM pragma_table_info('entries') WHERE name = 'id'"
    ).fetchone()
    if row is None:
        return False
    # SQLite type affinity: any declared type containing INT is integer
    return "INT" in (row[0] or "").upper()


def normalize_timestamp(value: str | None) -> str | None:
    """Rewrite a legacy timestamp in the stored UTC form.

    Legacy rows hold either naive UTC text from ``CURRENT_TIMESTAMP`` or
    offset-bearing text such as ``2024-01-01 10:00:00.5-08:00``. Range
    filters compare timestamps as strings, so both must be brought to one
    form. Values that do not parse are kept as they are.
    """
    if value is None:
        return None
    try:
        return format_timestamp(parse_timestamp(str(value)))
    except ValueError:
        logger.warning(f"Keeping unparseable legacy timestamp {value!r}")
        return value


def _copy_to_shadow_tables(conn: sqlite3.Connection) -> tuple[int, int]:
    """Copy entries and tags into TEXT-keyed shadow tables and swap them in.

    Must run inside an open transaction.
    """
    conn.execute(_CREATE_ENTRIES_NEW)

    rows = conn.execute(
        """
        SELECT id, timestamp, message, hostname, username,
               working_directory, created_at
        FROM entries
        """
    ).fetchall()

    id_map: dict[int, str] = {}
    for old_id, timestamp, message, hostname, username, cwd, created_at in rows:
        new_id = str(uuid.uuid4())
        id_map[old_id] = new_id
        conn.execute(
            """
            INSERT INTO entries_new (
                id, timestamp, message, hostname, username,
                working_directory, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                new_id,
                normalize_timestamp(timestamp),
                message,
                hostname,
                username,
                cwd,
                normalize_timestamp(created_at),
            ),
        )

    conn.execute(_CREATE_TAGS_NEW)

    tag_rows = conn.execute("SELECT entry_id, tag FROM tags").fetchall()
    migrated_tags = []
    for old_entry_id, tag in tag_rows:
        new_entry_id = id_map.get(old_entry_id)
        if new_entry_id is None:
            continue  # orphan
        migrated_tags.append((new_entry_id, tag))

    conn.executemany(
        "INSERT INTO tags_new (entry_id, tag) VALUES (?, ?)", migrated_tags
    )

    dropped = len(tag_rows) - len(migrated_tags)
    if dropped:
        logger.warning(f"Dropped {dropped} orphaned tag rows during migration")

    drop_fts_index(conn)
    conn.execute("DROP TABLE tags")
    conn.execute("DROP TABLE entries")
    conn.execute("ALTER TABLE entries_new RENAME TO entries")
    conn.execute("ALTER TABLE tags_new RENAME TO tags")

    return len(rows), len(migrated_tags)


def migrate_to_uuid(conn: sqlite3.Connection) -> int:
    """Re-key entries and tags with UUID strings.

    The connection must be in autocommit mode (``isolation_level=None``) so
    the transaction boundaries below are the only ones in play.

    Args:
        conn: Open connection to a database with the legacy schema.

    Returns:
        Number of entries migrated.

    Raises:
        MigrationError: If any step fails. The transaction is rolled back
            and the legacy schema is left untouched.
    """
    fk_enabled = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    # foreign_keys cannot be toggled inside a transaction
    conn.execute("PRAGMA foreign_keys = OFF")
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            entries, tags = _copy_to_shadow_tables(conn)
            violations = conn.execute("PRAGMA foreign_key_check").fetchall()
            if violations:
                raise sqlite3.IntegrityError(
                    f"{len(violations)} foreign key violations after migration"
                )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise MigrationError(f"UUID migration failed: {e}") from e
    finally:
        conn.execute(f"PRAGMA foreign_keys = {'ON' if fk_enabled else 'OFF'}")

    ensure_schema(conn)
    rebuild_fts_index(conn)

    logger.info(f"Migrated {entries} entries and {tags} tags to UUID keys")
    return entries


def migrate_if_needed(conn: sqlite3.Connection) -> bool:
    """Run the UUID migration if the database still has integer keys.

    Returns:
        True if a migration was performed.
    """
    if not needs_uuid_migration(conn):
        return False
    migrate_to_uuid(conn)
    return True
