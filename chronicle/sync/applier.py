"""Fold decrypted remote changes into the local entry store.

Applying a change is idempotent: the same change applied twice leaves the
same state as applying it once. Conflicts are last-writer-wins in local
apply order; no timestamps or vector clocks are compared, so concurrent
edits of one entry on two devices are not merged.
"""

import logging

from ..store.entries import EntryStore
from .change import ENTITY_ENTRY, Change, payload_to_entry

logger = logging.getLogger(__name__)


class ChangeApplier:
    """Applies change records to an EntryStore."""

    def __init__(self, store: EntryStore):
        self.store = store

    def apply(self, change: Change) -> bool:
        """Apply one change.

        Unknown entity kinds are ignored so that an older client survives
        records written by a newer one.

        Returns:
            True if the change was applied, False if it was ignored.

        Raises:
            ChangeDecodeError: If an upsert payload cannot be decoded.
            ValidationError: If the decoded entry is invalid.
        """
        if change.entity == ENTITY_ENTRY:
            self._apply_entry_change(change)
            return True

        logger.debug(f"Ignoring change for unknown entity {change.entity!r}")
        return False

    def _apply_entry_change(self, change: Change) -> None:
        if change.is_delete:
            removed = self.store.delete_entry(change.entity_id)
            logger.debug(
                f"Applied delete of {change.entity_id} (existed={removed})"
            )
            return

        entry = payload_to_entry(change.payload, change.entity_id)
        # Upsert overwrites every field and replaces the tag set wholesale.
        self.store.upsert_entry(entry)
        logger.debug(f"Applied upsert of {entry.id} with {len(entry.tags)} tags")
