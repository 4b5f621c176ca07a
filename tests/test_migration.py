"""Tests for the integer-to-UUID schema migration."""

import sqlite3
from datetime import datetime, timezone

import pytest

from chronicle.errors import MigrationError
from chronicle.store import EntryStore, SearchFilter, migrate_to_uuid, needs_uuid_migration
from chronicle.store.migration import normalize_timestamp

from conftest import make_entry

LEGACY_SCHEMA = """
CREATE TABLE entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    message TEXT NOT NULL,
    hostname TEXT NOT NULL,
    username TEXT NOT NULL,
    working_directory TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id INTEGER NOT NULL,
    tag TEXT NOT NULL,
    FOREIGN KEY (entry_id) REFERENCES entries(id) ON DELETE CASCADE
);

CREATE VIRTUAL TABLE entries_fts USING fts5(
    message,
    content='entries',
    content_rowid='id'
);

CREATE TRIGGER entries_ai AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(rowid, message) VALUES (new.id, new.message);
END;
"""


def create_legacy_db(path, entries=(("test message", ["test-tag"]),), orphan_tags=()):
    """Build a database with the legacy integer-keyed schema."""
    conn = sqlite3.connect(str(path))
    conn.executescript(LEGACY_SCHEMA)
    for message, tags in entries:
        cursor = conn.execute(
            """
            INSERT INTO entries (timestamp, message, hostname, username, working_directory)
            VALUES ('2024-06-01 09:30:00', ?, 'host', 'user', '/work')
            """,
            (message,),
        )
        for tag in tags:
            conn.execute(
                "INSERT INTO tags (entry_id, tag) VALUES (?, ?)", (cursor.lastrowid, tag)
            )
    for entry_id, tag in orphan_tags:
        conn.execute("INSERT INTO tags (entry_id, tag) VALUES (?, ?)", (entry_id, tag))
    conn.commit()
    conn.close()


@pytest.fixture
def legacy_path(tmp_path):
    path = tmp_path / "legacy.db"
    create_legacy_db(path)
    return path


class TestNeedsMigration:
    """Tests for legacy schema detection."""

    def test_detects_integer_ids(self, legacy_path):
        conn = sqlite3.connect(str(legacy_path))
        assert needs_uuid_migration(conn) is True
        conn.close()

    def test_new_schema_needs_nothing(self, store):
        assert needs_uuid_migration(store.connection) is False

    def test_empty_database_needs_nothing(self):
        conn = sqlite3.connect(":memory:")
        assert needs_uuid_migration(conn) is False
        conn.close()


class TestMigration:
    """Tests for migrating a legacy database on open."""

    def test_migration_preserves_entry_and_tag(self, legacy_path):
        with EntryStore(legacy_path) as store:
            (entry,) = store.list_entries(10)

            assert len(entry.id) == 36
            assert entry.message == "test message"
            assert entry.tags == ["test-tag"]

            tag_count = store.connection.execute(
                "SELECT COUNT(*) FROM tags WHERE entry_id = ?", (entry.id,)
            ).fetchone()[0]
            assert tag_count == 1

    def test_migration_keeps_timestamp(self, legacy_path):
        with EntryStore(legacy_path) as store:
            (entry,) = store.list_entries(1)
            assert entry.timestamp.isoformat() == "2024-06-01T09:30:00+00:00"

    def test_migration_normalizes_offset_timestamps(self, tmp_path):
        path = tmp_path / "offsets.db"
        create_legacy_db(path, entries=())
        conn = sqlite3.connect(str(path))
        conn.executemany(
            """
            INSERT INTO entries (timestamp, message, hostname, username, working_directory)
            VALUES (?, ?, 'host', 'user', '/work')
            """,
            [
                # 18:00 UTC, but sorts before the next row as raw text
                ("2024-06-01 10:00:00.123456789-08:00", "pacific"),
                ("2024-06-01 17:00:00", "utc"),
            ],
        )
        conn.commit()
        conn.close()

        with EntryStore(path) as store:
            assert [e.message for e in store.list_entries(10)] == ["pacific", "utc"]

            since = datetime(2024, 6, 1, 17, 30, tzinfo=timezone.utc)
            results = store.search_entries(SearchFilter(since=since))
            assert [e.message for e in results] == ["pacific"]

            stored = {
                row[0]
                for row in store.connection.execute("SELECT timestamp FROM entries")
            }
            assert stored == {"2024-06-01 18:00:00.123456", "2024-06-01 17:00:00.000000"}

    def test_unparseable_timestamp_kept(self):
        assert normalize_timestamp("yesterday-ish") == "yesterday-ish"
        assert normalize_timestamp(None) is None

    def test_migration_rebuilds_search_index(self, legacy_path):
        with EntryStore(legacy_path) as store:
            results = store.search_entries(SearchFilter(text="message"))
            assert [e.message for e in results] == ["test message"]

            names = {
                row[0]
                for row in store.connection.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'trigger'"
                )
            }
            assert "entries_ai" not in names

    def test_migrated_ids_unique(self, tmp_path):
        path = tmp_path / "many.db"
        create_legacy_db(path, entries=[(f"entry {i}", [f"t{i}"]) for i in range(20)])

        with EntryStore(path) as store:
            entries = store.list_entries(100)
            assert len({e.id for e in entries}) == 20
            assert all(e.tags == [f"t{e.message.split()[1]}"] for e in entries)

    def test_migration_runs_once(self, legacy_path):
        with EntryStore(legacy_path) as store:
            (first,) = store.list_entries(1)

        with EntryStore(legacy_path) as store:
            (second,) = store.list_entries(1)

        assert first.id == second.id

    def test_orphan_tags_dropped(self, tmp_path):
        path = tmp_path / "orphans.db"
        create_legacy_db(path, orphan_tags=[(999, "lost")])

        with EntryStore(path) as store:
            assert store.get_stats()["tags_count"] == 1
            violations = store.connection.execute("PRAGMA foreign_key_check").fetchall()
            assert violations == []

    def test_cascade_works_after_migration(self, legacy_path):
        with EntryStore(legacy_path) as store:
            (entry,) = store.list_entries(1)
            store.delete_entry(entry.id)
            assert store.get_stats()["tags_count"] == 0

    def test_new_entries_after_migration(self, legacy_path):
        with EntryStore(legacy_path) as store:
            new_id = store.create_entry(make_entry("fresh", ["new"]))
            assert store.count_entries() == 2
            assert store.get_entry(new_id).tags == ["new"]


class TestMigrationFailure:
    """Tests for a failed migration leaving the legacy schema intact."""

    def test_failure_rolls_back(self, legacy_path):
        conn = sqlite3.connect(str(legacy_path), isolation_level=None)
        # A leftover shadow table makes the copy step fail midway
        conn.execute("CREATE TABLE tags_new (x)")

        with pytest.raises(MigrationError) as exc_info:
            migrate_to_uuid(conn)

        assert isinstance(exc_info.value.__cause__, sqlite3.Error)
        assert needs_uuid_migration(conn) is True
        assert conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0] == 1
        assert conn.execute("SELECT COUNT(*) FROM tags").fetchone()[0] == 1
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert "entries_new" not in tables
        conn.close()

    def test_store_open_surfaces_failure(self, legacy_path):
        conn = sqlite3.connect(str(legacy_path))
        conn.execute("CREATE TABLE tags_new (x)")
        conn.commit()
        conn.close()

        store = EntryStore(legacy_path)
        with pytest.raises(MigrationError):
            store.connect()
