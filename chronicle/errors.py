"""Exception hierarchy for Chronicle.

Storage failures are not wrapped: ``sqlite3.Error`` propagates to the caller
unchanged. The classes below cover the failures that carry meaning of their
own (bad input, a failed migration, sync problems).
"""


class ChronicleError(Exception):
    """Base class for all Chronicle errors."""


class ValidationError(ChronicleError, ValueError):
    """Input rejected before anything was written."""


class ChangeDecodeError(ValidationError):
    """A change record or its payload could not be decoded."""


class MigrationError(ChronicleError):
    """The schema migration failed and was rolled back."""


class SyncError(ChronicleError):
    """Base class for sync failures."""

    hint: str = "retry later"


class SyncNotConfiguredError(SyncError):
    """Sync credentials or encryption key are missing."""

    hint = "run 'chronicle sync login' first"


class RemoteUnavailableError(SyncError):
    """The remote endpoint could not be reached."""

    hint = "check your network connection and retry later"


class AuthenticationError(SyncError):
    """The remote endpoint rejected our credentials."""

    hint = "re-authenticate with 'chronicle sync login'"


class DecryptionError(SyncError):
    """A change envelope failed authentication or could not be decrypted."""

    hint = "check that this device uses the same sync key as your other devices"
