"""Shared fixtures for Chronicle tests."""

from datetime import datetime, timezone

import pytest

from chronicle.config import SyncConfig
from chronicle.errors import DecryptionError
from chronicle.store import Entry, EntryStore
from chronicle.sync.client import PullPage, PushAck, RemoteRecord
from chronicle.sync.crypto import generate_secret


class FakeCipher:
    """Reversible stand-in for AES-GCM that still checks associated data."""

    def encrypt(self, plaintext: bytes, associated_data: bytes) -> bytes:
        return len(associated_data).to_bytes(2, "big") + associated_data + plaintext

    def decrypt(self, ciphertext: bytes, associated_data: bytes) -> bytes:
        size = int.from_bytes(ciphertext[:2], "big")
        if ciphertext[2:2 + size] != associated_data:
            raise DecryptionError("associated data mismatch")
        return ciphertext[2 + size:]


class FakeRemote:
    """In-memory sync server shared by any number of devices."""

    def __init__(self):
        self.records: list[RemoteRecord] = []
        self.push_calls = 0
        self.pull_calls = 0
        self.accept = True
        self.error: Exception | None = None
        self._seq = 0

    async def push(self, changes) -> PushAck:
        self.push_calls += 1
        if self.error:
            raise self.error
        if not self.accept:
            return PushAck(accepted=[], remaining=len(changes))

        known = {r.change_id for r in self.records}
        for change in changes:
            if change.change_id in known:
                continue
            self._seq += 1
            self.records.append(
                RemoteRecord(
                    seq=str(self._seq),
                    change_id=change.change_id,
                    entity=change.entity,
                    entity_id=change.entity_id,
                    device_id=change.device_id,
                    envelope=change.envelope,
                )
            )
        return PushAck(accepted=[c.change_id for c in changes], remaining=0)

    async def pull(self, cursor: str, limit: int) -> PullPage:
        self.pull_calls += 1
        if self.error:
            raise self.error
        newer = [r for r in self.records if int(r.seq) > int(cursor)]
        page = newer[:limit]
        return PullPage(
            records=page,
            next_cursor=page[-1].seq if page else cursor,
            has_more=len(newer) > limit,
        )

    async def wipe(self) -> int:
        deleted = len(self.records)
        self.records.clear()
        return deleted

    def add_raw(self, device_id: str, envelope: bytes, entity_id: str = "x") -> RemoteRecord:
        """Insert a record directly, bypassing any device."""
        self._seq += 1
        record = RemoteRecord(
            seq=str(self._seq),
            change_id=f"raw-{self._seq}",
            entity="entry",
            entity_id=entity_id,
            device_id=device_id,
            envelope=envelope,
        )
        self.records.append(record)
        return record


def make_entry(message: str, tags=None, minutes: int = 0, **kwargs) -> Entry:
    """Build an entry with a fixed timestamp, ``minutes`` after a base time."""
    return Entry(
        message=message,
        timestamp=datetime(2025, 1, 15, 12, minutes, tzinfo=timezone.utc),
        hostname=kwargs.pop("hostname", "laptop"),
        username=kwargs.pop("username", "alice"),
        working_directory=kwargs.pop("working_directory", "/home/alice"),
        tags=list(tags or []),
        **kwargs,
    )


@pytest.fixture
def store():
    """Create an in-memory entry store."""
    s = EntryStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def other_store():
    """A second in-memory store, standing in for another device."""
    s = EntryStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path):
    """Create an entry store backed by a file."""
    s = EntryStore(tmp_path / "chronicle.db")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def fake_cipher():
    return FakeCipher()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def sync_secret():
    return generate_secret()


@pytest.fixture
def sync_config(sync_secret):
    """Sync settings for device A."""
    return SyncConfig(
        server="http://sync.test",
        user_id="user-1",
        token="token-1",
        derived_key=sync_secret,
        device_id="device-a",
        batch_size=100,
    )
