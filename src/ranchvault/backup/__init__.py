"""
Backup and restore engine for ranchvault.

This module exports a ranch's records and photos to a portable archive
and restores archives into a live ranch, in "missing" (additive) or
"replace" (destructive) mode.
"""

from ranchvault.backup.archive import ArchiveReader, ArchiveWriter
from ranchvault.backup.errors import (
    ArchiveFormatError,
    BackupEngineError,
    ExportError,
    MediaTransferError,
    OperationCancelledError,
    ReconciliationError,
    RestoreError,
    RestoreLockError,
)
from ranchvault.backup.manifest import (
    FORMAT_VERSION,
    SUPPORTED_FORMAT_VERSIONS,
    RanchSnapshotManifest,
)
from ranchvault.backup.progress import CancellationToken, ProgressReporter
from ranchvault.backup.reconcile import (
    DUPLICATE_POLICIES,
    MODE_MISSING,
    MODE_REPLACE,
    RESTORE_MODES,
    IdReconciliationMap,
)
from ranchvault.backup.restore import RestoreOptions, RestoreOrchestrator, RestoreSummary
from ranchvault.backup.snapshot import ExportResult, SnapshotBuilder

__all__ = [
    # Export
    "SnapshotBuilder",
    "ExportResult",
    # Restore
    "RestoreOrchestrator",
    "RestoreOptions",
    "RestoreSummary",
    "IdReconciliationMap",
    "MODE_MISSING",
    "MODE_REPLACE",
    "RESTORE_MODES",
    "DUPLICATE_POLICIES",
    # Archive
    "ArchiveWriter",
    "ArchiveReader",
    "RanchSnapshotManifest",
    "FORMAT_VERSION",
    "SUPPORTED_FORMAT_VERSIONS",
    # Progress
    "ProgressReporter",
    "CancellationToken",
    # Errors
    "BackupEngineError",
    "ExportError",
    "ArchiveFormatError",
    "ReconciliationError",
    "MediaTransferError",
    "RestoreLockError",
    "RestoreError",
    "OperationCancelledError",
]
