"""Change records: the unit of replication between devices.

A change describes one mutation of one entity. Upserts carry the full entity
state as a JSON payload, deletes carry none. Changes travel sealed: the
serialized record is encrypted with the sync key, with the owning user and
the originating device bound in as associated data.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import ChangeDecodeError
from ..store.entries import Entry
from .crypto import Cipher

ENTITY_ENTRY = "entry"

# Stable namespace for this application's records on a shared sync server.
APP_ID = "8ef3529f-0978-4a10-ab4a-b9a960d6ffff"


class Op(str, Enum):
    """Kind of mutation a change describes."""

    UPSERT = "upsert"
    DELETE = "delete"


@dataclass
class Change:
    """A single replicated mutation."""

    entity: str
    entity_id: str
    op: Op
    payload: dict[str, Any] | None = None
    deleted: bool = False  # authoritative: overrides op when set
    change_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_delete(self) -> bool:
        return self.deleted or self.op == Op.DELETE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "change_id": self.change_id,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "op": self.op.value,
            "payload": self.payload,
            "deleted": self.deleted,
            "ts": self.ts.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Change":
        """Create from dictionary.

        Raises:
            ChangeDecodeError: If required fields are missing or invalid.
        """
        try:
            return cls(
                change_id=data["change_id"],
                entity=data["entity"],
                entity_id=data["entity_id"],
                op=Op(data["op"]),
                payload=data.get("payload"),
                deleted=bool(data.get("deleted", False)),
                ts=datetime.fromisoformat(data["ts"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChangeDecodeError(f"invalid change record: {e}") from e

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Change":
        try:
            decoded = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ChangeDecodeError(f"undecodable change record: {e}") from e
        if not isinstance(decoded, dict):
            raise ChangeDecodeError("change record is not an object")
        return cls.from_dict(decoded)


def entry_to_payload(entry: Entry) -> dict[str, Any]:
    """Serialize an entry's full state for an upsert change."""
    timestamp = entry.timestamp or datetime.now(timezone.utc)
    return {
        "id": entry.id,
        "timestamp": int(timestamp.timestamp()),
        "message": entry.message,
        "hostname": entry.hostname,
        "username": entry.username,
        "working_directory": entry.working_directory,
        "tags": list(entry.tags),
    }


def payload_to_entry(payload: dict[str, Any], entity_id: str = "") -> Entry:
    """Rebuild an entry from an upsert payload.

    Args:
        payload: Decoded payload object.
        entity_id: Fallback id when the payload carries none.

    Raises:
        ChangeDecodeError: If the payload is not a valid entry.
    """
    if not isinstance(payload, dict):
        raise ChangeDecodeError("entry payload is not an object")

    try:
        entry_id = payload.get("id") or entity_id
        if not entry_id:
            raise ValueError("missing id")
        tags = payload.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ValueError("tags must be a list of strings")
        return Entry(
            id=str(entry_id),
            timestamp=datetime.fromtimestamp(payload["timestamp"], tz=timezone.utc),
            message=payload["message"],
            hostname=payload.get("hostname", ""),
            username=payload.get("username", ""),
            working_directory=payload.get("working_directory", ""),
            tags=tags,
        )
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
        raise ChangeDecodeError(f"unmarshal entry payload: {e}") from e


class ChangeCodec:
    """Seals and opens change records with an injected cipher."""

    def __init__(self, cipher: Cipher, user_id: str):
        self.cipher = cipher
        self.user_id = user_id

    def associated_data(self, device_id: str) -> bytes:
        """Bind a ciphertext to the owning user and originating device."""
        return f"{self.user_id}:{device_id}".encode("utf-8")

    def seal(self, change: Change, device_id: str) -> bytes:
        return self.cipher.encrypt(change.to_bytes(), self.associated_data(device_id))

    def open(self, envelope: bytes, device_id: str) -> Change:
        """Decrypt and decode a sealed change.

        Raises:
            DecryptionError: If authentication fails.
            ChangeDecodeError: If the plaintext is not a change record.
        """
        plaintext = self.cipher.decrypt(envelope, self.associated_data(device_id))
        return Change.from_bytes(plaintext)
