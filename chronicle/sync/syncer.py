"""Sync orchestration: queue local changes, push them, pull and apply others.

A round is push-then-pull. Local writes never wait on it: the entry store
commits first and the queue only records what happened. A round that cannot
reach the server leaves the queue and cursor as they were.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..config import SyncConfig
from ..errors import (
    ChronicleError,
    RemoteUnavailableError,
    SyncError,
    SyncNotConfiguredError,
)
from ..store.entries import Entry, EntryStore
from .applier import ChangeApplier
from .change import ENTITY_ENTRY, Change, ChangeCodec, Op, entry_to_payload
from .client import RemoteEndpoint, SyncClient
from .crypto import AESGCMCipher, Cipher
from .queue import LAST_PULLED_KEY, ChangeQueue, PendingItem, QueuedChange

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    ERROR = "error"


class SyncStatus(Enum):
    """Outcome of a sync round."""

    SUCCESS = "success"
    OFFLINE = "offline"  # Remote unavailable
    FAILED = "failed"
    TIMEOUT = "timeout"
    NOT_CONFIGURED = "not_configured"


@dataclass
class SyncResult:
    """Result of a sync round."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    error: str | None = None
    hint: str | None = None
    timestamp: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS


@dataclass
class SyncEvents:
    """Optional progress callbacks. They only affect verbosity."""

    on_push: Callable[[int], None] | None = None
    on_pull: Callable[[int], None] | None = None
    on_state: Callable[[SyncState], None] | None = None
    on_complete: Callable[[SyncResult], None] | None = None


class Syncer:
    """Coordinates the outbox, the remote endpoint and the applier."""

    def __init__(
        self,
        config: SyncConfig,
        store: EntryStore,
        remote: RemoteEndpoint | None = None,
        cipher: Cipher | None = None,
        on_token_refresh: Callable[[SyncConfig], None] | None = None,
    ):
        """Initialize the syncer.

        Args:
            config: Sync settings and credentials.
            store: Local entry store; also hosts the outbox tables.
            remote: Remote endpoint. Built from config when omitted.
            cipher: Envelope cipher. Derived from config.derived_key when
                omitted.
            on_token_refresh: Called with the updated config after the
                client refreshed its token, so it can be saved.

        Raises:
            SyncNotConfiguredError: If no key or device id is available.
        """
        if cipher is None:
            if not config.derived_key:
                raise SyncNotConfiguredError(
                    "derived key not configured - run 'chronicle sync login' first"
                )
            cipher = AESGCMCipher.from_secret(config.derived_key)
        if not config.device_id:
            raise SyncNotConfiguredError("device id not configured")

        self.config = config
        self.store = store
        self.codec = ChangeCodec(cipher, config.user_id)
        self.queue = ChangeQueue(store, self.codec, config.device_id)
        self.queue.connect()
        self.applier = ChangeApplier(store)
        self._remote = remote
        self._on_token_refresh = on_token_refresh
        self._state = SyncState.IDLE
        self._last_sync: datetime | None = None
        self._last_result: SyncResult | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    def can_sync(self) -> bool:
        if self._remote is not None:
            return True
        return self.config.can_sync()

    def _get_remote(self) -> RemoteEndpoint:
        if self._remote is None:
            self._remote = SyncClient(
                base_url=self.config.server,
                user_id=self.config.user_id,
                device_id=self.config.device_id,
                token=self.config.token,
                refresh_token=self.config.refresh_token,
                max_retries=self.config.max_retries,
                timeout=self.config.request_timeout_seconds,
                on_token_refresh=self._token_refreshed,
            )
        return self._remote

    def _token_refreshed(self, token: str, refresh_token: str, expires: str) -> None:
        self.config.token = token
        self.config.refresh_token = refresh_token
        self.config.token_expires = expires
        if self._on_token_refresh:
            try:
                self._on_token_refresh(self.config)
            except OSError as e:
                logger.warning(f"Failed to save refreshed token: {e}")

    def _set_state(self, state: SyncState, events: SyncEvents | None) -> None:
        self._state = state
        if events and events.on_state:
            events.on_state(state)

    # ==================== Queueing ====================

    async def queue_entry_change(self, entry: Entry, op: Op) -> SyncResult | None:
        """Queue a change for an entry, syncing straight away if auto-sync is on.

        Returns:
            The auto-sync round's result, or None if no round ran.
        """
        payload = entry_to_payload(entry) if op != Op.DELETE else None
        return await self.queue_change(ENTITY_ENTRY, entry.id, op, payload)

    async def queue_change(
        self,
        entity: str,
        entity_id: str,
        op: Op,
        payload: dict[str, Any] | None = None,
    ) -> SyncResult | None:
        self.queue.queue_change(entity, entity_id, op, payload)

        if self.config.auto_sync and self.can_sync():
            return await self.sync()
        return None

    def pending_count(self) -> int:
        return self.queue.pending_count()

    def pending_changes(self, limit: int = 100) -> list[PendingItem]:
        return self.queue.pending_changes(limit)

    def last_synced_seq(self) -> str:
        return self.queue.last_synced_seq()

    # ==================== Sync Round ====================

    async def sync(
        self,
        events: SyncEvents | None = None,
        timeout: float | None = None,
    ) -> SyncResult:
        """Push local changes and pull remote changes.

        Args:
            events: Optional progress callbacks.
            timeout: Deadline for the whole round in seconds. Defaults to
                config.round_timeout_seconds.

        Returns:
            SyncResult. Network, auth and decode failures are reported here
            rather than raised.
        """
        return await self._sync(events, timeout, skip_own=True)

    async def _sync(
        self,
        events: SyncEvents | None,
        timeout: float | None,
        skip_own: bool,
    ) -> SyncResult:
        if not self.can_sync():
            result = SyncResult(
                status=SyncStatus.NOT_CONFIGURED,
                error="sync not configured",
                hint=SyncNotConfiguredError.hint,
            )
            self._finish(result, events)
            return result

        deadline = timeout if timeout is not None else self.config.round_timeout_seconds
        counts = {"pushed": 0, "pulled": 0}

        result: SyncResult | None = None
        try:
            result = await asyncio.wait_for(
                self._run_round(events, counts, skip_own), deadline
            )
        except asyncio.TimeoutError:
            self._set_state(SyncState.ERROR, events)
            result = SyncResult(
                status=SyncStatus.TIMEOUT,
                entries_pushed=counts["pushed"],
                entries_pulled=counts["pulled"],
                error=f"sync timed out after {deadline}s",
                hint=SyncError.hint,
            )
        except Exception as e:
            logger.error(f"Sync round aborted: {e}")
            raise
        finally:
            if result is None:
                # Aborted by an unexpected error or cancellation
                self._set_state(SyncState.ERROR, events)
                self._set_state(SyncState.IDLE, events)

        self._finish(result, events)
        return result

    def _finish(self, result: SyncResult, events: SyncEvents | None) -> None:
        result.timestamp = datetime.now(timezone.utc)
        self._last_result = result
        if result.ok:
            self._last_sync = result.timestamp
        self._set_state(SyncState.IDLE, events)

        logger.info(
            f"Sync: {result.status.value}, "
            f"pushed={result.entries_pushed}, pulled={result.entries_pulled}"
        )
        if events and events.on_complete:
            events.on_complete(result)

    async def _run_round(
        self, events: SyncEvents | None, counts: dict[str, int], skip_own: bool
    ) -> SyncResult:
        remote = self._get_remote()
        status = SyncStatus.SUCCESS
        error = hint = None

        try:
            self._set_state(SyncState.PUSHING, events)
            await self._push(remote, events, counts)

            self._set_state(SyncState.PULLING, events)
            await self._pull(remote, events, counts, skip_own)
        except RemoteUnavailableError as e:
            status, error, hint = SyncStatus.OFFLINE, str(e), e.hint
        except SyncError as e:
            status, error, hint = SyncStatus.FAILED, str(e), e.hint
        except ChronicleError as e:
            # Undecodable records: the page was not applied, cursor unchanged
            status, error, hint = SyncStatus.FAILED, str(e), SyncError.hint

        if status != SyncStatus.SUCCESS:
            self._set_state(SyncState.ERROR, events)
            logger.warning(f"Sync round failed: {error}")

        return SyncResult(
            status=status,
            entries_pushed=counts["pushed"],
            entries_pulled=counts["pulled"],
            error=error,
            hint=hint,
        )

    async def _push(
        self,
        remote: RemoteEndpoint,
        events: SyncEvents | None,
        counts: dict[str, int],
    ) -> None:
        """Drain the outbox in bounded batches, oldest first."""
        while True:
            batch: list[QueuedChange] = self.queue.dequeue_batch(self.config.batch_size)
            if not batch:
                return

            ack = await remote.push(batch)

            batch_ids = {c.change_id for c in batch}
            accepted = [cid for cid in ack.accepted if cid in batch_ids]
            removed = self.queue.ack(accepted)
            counts["pushed"] += removed

            if events and events.on_push:
                events.on_push(removed)

            if removed == 0:
                # Nothing accepted; leave the rest for the next round
                logger.warning(f"Server accepted none of {len(batch)} changes")
                return

    async def _pull(
        self,
        remote: RemoteEndpoint,
        events: SyncEvents | None,
        counts: dict[str, int],
        skip_own: bool = True,
    ) -> None:
        """Fetch pages newer than the cursor and apply them.

        Each page is decrypted in full before anything is written; the
        applies and the cursor update then commit together. Records from this
        device are skipped unless ``skip_own`` is False.
        """
        cursor = self.queue.last_synced_seq()

        while True:
            page = await remote.pull(cursor, self.config.batch_size)

            changes: list[Change] = []
            for record in page.records:
                if skip_own and record.device_id == self.config.device_id:
                    continue  # our own change, already applied locally
                change = self.codec.open(record.envelope, record.device_id)
                if record.deleted:
                    change.deleted = True
                changes.append(change)

            with self.store.transaction():
                for change in changes:
                    self.applier.apply(change)
                self.queue.set_state(LAST_PULLED_KEY, page.next_cursor)

            counts["pulled"] += len(changes)
            if events and events.on_pull:
                events.on_pull(len(changes))

            if not page.has_more or not page.records or page.next_cursor == cursor:
                return
            cursor = page.next_cursor

    # ==================== Administration ====================

    async def wipe(self, delete_local: bool = True) -> int:
        """Delete this user's data on the server and reset local sync state.

        Args:
            delete_local: Also delete every local entry.

        Returns:
            Number of server-side records deleted.
        """
        deleted = await self._get_remote().wipe()

        with self.store.transaction():
            self.queue.clear()
            self.queue.set_state(LAST_PULLED_KEY, "0")
            if delete_local:
                self.store.delete_all_entries()

        logger.info(f"Wiped {deleted} remote records")
        return deleted

    async def reset_from_remote(
        self,
        events: SyncEvents | None = None,
        timeout: float | None = None,
    ) -> SyncResult:
        """Discard local entries and pending changes, then pull everything.

        Unlike a normal round, records written by this device are applied
        too, since the local copies are gone.
        """
        with self.store.transaction():
            self.store.delete_all_entries()
            self.queue.clear()
            self.queue.set_state(LAST_PULLED_KEY, "0")

        logger.info("Local data cleared, re-syncing from remote")
        return await self._sync(events, timeout, skip_own=False)

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        queue_stats = self.queue.get_stats()
        return {
            "server": self.config.server,
            "user_id": self.config.user_id,
            "device_id": self.config.device_id,
            "auto_sync": self.config.auto_sync,
            "state": self._state.value,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "pending_changes": queue_stats["pending_changes"],
            "last_synced_seq": queue_stats["last_synced_seq"],
            "total_entries": self.store.count_entries(),
        }
