"""Durable outbox of sealed changes awaiting transmission.

The queue lives in the entry database and shares its connection, so queue
appends, remote applies and local writes are serialized by the same lock.
Rows are drained in sequence order; that order is a local hint only and
says nothing about ordering across devices.
"""

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..store.entries import EntryStore
from ..store.schema import format_timestamp, parse_timestamp
from .change import Change, ChangeCodec, Op

logger = logging.getLogger(__name__)

QUEUE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sync_queue (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        change_id TEXT NOT NULL UNIQUE,
        entity TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        ts TEXT NOT NULL,
        envelope BLOB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity, entity_id)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

LAST_PULLED_KEY = "last_pulled_seq"


@dataclass
class QueuedChange:
    """A sealed change as stored in the outbox."""

    seq: int
    change_id: str
    entity: str
    entity_id: str
    device_id: str
    ts: datetime
    envelope: bytes

    def to_wire(self) -> dict[str, Any]:
        """Convert to the JSON shape sent to the sync server."""
        return {
            "change_id": self.change_id,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "device_id": self.device_id,
            "ts": self.ts.isoformat(),
            "envelope": base64.b64encode(self.envelope).decode("ascii"),
        }


@dataclass
class PendingItem:
    """A change waiting to be synced, for status display."""

    change_id: str
    entity: str
    entity_id: str
    ts: datetime


class ChangeQueue:
    """Append-only outbox plus the small key/value sync state table."""

    def __init__(self, store: EntryStore, codec: ChangeCodec, device_id: str):
        """Initialize the queue.

        Args:
            store: Entry store whose connection the queue shares.
            codec: Seals changes before they are written.
            device_id: Identity of this device, bound into every envelope.
        """
        self.store = store
        self.codec = codec
        self.device_id = device_id

    def connect(self) -> None:
        """Create the queue and state tables if missing."""
        with self.store.transaction() as conn:
            for statement in QUEUE_SCHEMA:
                conn.execute(statement)

    def enqueue(self, change: Change) -> QueuedChange:
        """Seal a change and append it to the outbox.

        Returns:
            The stored queue row.
        """
        envelope = self.codec.seal(change, self.device_id)

        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_queue (
                    change_id, entity, entity_id, device_id, ts, envelope
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    change.change_id,
                    change.entity,
                    change.entity_id,
                    self.device_id,
                    format_timestamp(change.ts),
                    envelope,
                ),
            )
            seq = cursor.lastrowid

        logger.debug(f"Queued {change.op.value} {change.entity}:{change.entity_id} seq={seq}")
        return QueuedChange(
            seq=seq,
            change_id=change.change_id,
            entity=change.entity,
            entity_id=change.entity_id,
            device_id=self.device_id,
            ts=change.ts,
            envelope=envelope,
        )

    def queue_change(
        self,
        entity: str,
        entity_id: str,
        op: Op,
        payload: dict[str, Any] | None = None,
    ) -> QueuedChange:
        """Build a change record for a local mutation and enqueue it."""
        change = Change(
            entity=entity,
            entity_id=entity_id,
            op=op,
            payload=payload if op != Op.DELETE else None,
            deleted=op == Op.DELETE,
        )
        return self.enqueue(change)

    def dequeue_batch(self, limit: int = 100) -> list[QueuedChange]:
        """Read the oldest queued changes without removing them."""
        with self.store.reading() as conn:
            rows = conn.execute(
                """
                SELECT seq, change_id, entity, entity_id, device_id, ts, envelope
                FROM sync_queue
                ORDER BY seq ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            QueuedChange(
                seq=row["seq"],
                change_id=row["change_id"],
                entity=row["entity"],
                entity_id=row["entity_id"],
                device_id=row["device_id"],
                ts=parse_timestamp(row["ts"]),
                envelope=bytes(row["envelope"]),
            )
            for row in rows
        ]

    def ack(self, change_ids: list[str]) -> int:
        """Remove transmitted changes from the outbox.

        Returns:
            Number of rows removed.
        """
        if not change_ids:
            return 0

        placeholders = ",".join("?" * len(change_ids))
        with self.store.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM sync_queue WHERE change_id IN ({placeholders})",
                tuple(change_ids),
            )

        logger.debug(f"Acknowledged {cursor.rowcount} queued changes")
        return cursor.rowcount

    def clear(self) -> int:
        """Drop every queued change."""
        with self.store.transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_queue")
        return cursor.rowcount

    def pending_count(self) -> int:
        with self.store.reading() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue"
            ).fetchone()[0]

    def pending_changes(self, limit: int = 100) -> list[PendingItem]:
        """List queued changes, oldest first, without their envelopes."""
        with self.store.reading() as conn:
            rows = conn.execute(
                """
                SELECT change_id, entity, entity_id, ts
                FROM sync_queue
                ORDER BY seq ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            PendingItem(
                change_id=row["change_id"],
                entity=row["entity"],
                entity_id=row["entity_id"],
                ts=parse_timestamp(row["ts"]),
            )
            for row in rows
        ]

    # ==================== Sync State ====================

    def get_state(self, key: str, default: str = "") -> str:
        with self.store.reading() as conn:
            row = conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else default

    def set_state(self, key: str, value: str) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    def last_synced_seq(self) -> str:
        """Cursor of the last page pulled from the server."""
        return self.get_state(LAST_PULLED_KEY, "0")

    def get_stats(self) -> dict[str, Any]:
        oldest = self.pending_changes(limit=1)
        return {
            "device_id": self.device_id,
            "pending_changes": self.pending_count(),
            "oldest_pending": oldest[0].ts.isoformat() if oldest else None,
            "last_synced_seq": self.last_synced_seq(),
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }
