"""Multi-device sync for Chronicle entries.

Local mutations are recorded as encrypted change records in an outbox,
pushed to a remote endpoint, and remote changes are pulled and applied
idempotently to the local store.
"""

from .applier import ChangeApplier
from .change import Change, ChangeCodec, Op
from .client import SyncClient
from .crypto import AESGCMCipher, derive_key, generate_secret
from .queue import ChangeQueue
from .syncer import SyncEvents, SyncResult, SyncState, SyncStatus, Syncer

__all__ = [
    "ChangeApplier",
    "Change",
    "ChangeCodec",
    "Op",
    "SyncClient",
    "AESGCMCipher",
    "derive_key",
    "generate_secret",
    "ChangeQueue",
    "SyncEvents",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "Syncer",
]
