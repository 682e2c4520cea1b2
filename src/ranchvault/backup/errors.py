"""
Exceptions raised by the backup engine.

Every error derives from BackupEngineError so callers can catch the whole
family. ArchiveFormatError and ReconciliationError are always raised before
a restore touches live data.
"""

from __future__ import annotations


class BackupEngineError(Exception):
    """Base exception for export and restore failures."""

    pass


class ExportError(BackupEngineError):
    """Raised when an export cannot complete (ranch missing, store unavailable)."""

    pass


class ArchiveFormatError(BackupEngineError):
    """
    Raised when an archive is unreadable.

    Covers unsupported format versions, checksum mismatches, malformed
    records and truncated containers.
    """

    def __init__(self, message: str, member: str | None = None) -> None:
        self.member = member
        super().__init__(message)


class ReconciliationError(BackupEngineError):
    """Raised for archive inconsistencies that cannot be resolved by nulling links."""

    def __init__(self, message: str, entity: str | None = None, record_id: str | None = None) -> None:
        self.entity = entity
        self.record_id = record_id
        super().__init__(message)


class MediaTransferError(BackupEngineError):
    """
    Raised when one media item cannot be transferred.

    Never fatal to the surrounding export or restore; the item is counted
    and reported instead.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class RestoreLockError(BackupEngineError):
    """
    Raised when another restore holds the target ranch's lock.

    Either the lock was held when the restore started, or a running
    restore found it had been taken over as stale.
    """

    def __init__(self, ranch_id: str, message: str | None = None) -> None:
        self.ranch_id = ranch_id
        super().__init__(message or f"A restore is already in progress for ranch {ranch_id}")


class RestoreError(BackupEngineError):
    """Raised when a restore fails (target ranch missing, store failure)."""

    pass


class OperationCancelledError(BackupEngineError):
    """Raised when an export or restore is cancelled by the caller."""

    pass
