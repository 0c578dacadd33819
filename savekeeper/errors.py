"""Exception hierarchy for Save Keeper.

Every error raised by the core derives from :class:`SaveKeeperError` so
callers can catch the whole family at the boundary where they report it.
"""


class SaveKeeperError(Exception):
    """Base exception for all Save Keeper errors."""
    pass


# ---- not found ---------------------------------------------------------


class NotFoundError(SaveKeeperError):
    """A watched file, backup record, or archive file is missing."""
    pass


class SourceMissingError(NotFoundError):
    """The file to watch or back up does not exist."""
    pass


class RecordNotFoundError(NotFoundError):
    """No ledger record has the requested id."""
    pass


class ArchiveMissingError(NotFoundError):
    """The archive file backing a ledger record is gone."""
    pass


# ---- filesystem failures -----------------------------------------------


class IOFailureError(SaveKeeperError):
    """A read, copy, or write failed at the filesystem boundary."""
    pass


class ReadError(IOFailureError):
    """A file could not be opened or read to the end."""
    pass


class CopyFailedError(IOFailureError):
    """Copying the source into the archive failed."""
    pass


class LedgerWriteError(IOFailureError):
    """The ledger could not be persisted."""
    pass


class RestoreError(IOFailureError):
    """Restoring a backup failed; the target was rolled back."""
    pass


class RestoreRollbackError(RestoreError):
    """Restoring failed and so did the rollback.

    The target file is in an unknown state. ``aside_path`` points at the
    copy of its pre-restore content, when one was made.
    """

    def __init__(self, message: str, aside_path: str | None = None):
        super().__init__(message)
        self.aside_path = aside_path


# ---- session / configuration -------------------------------------------


class AlreadyRunningError(SaveKeeperError):
    """A monitoring session is already active."""
    pass


class ConfigError(SaveKeeperError):
    """A configuration value is out of range or missing."""
    pass
