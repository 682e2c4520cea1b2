"""
Storage layer for ranchvault.

This module provides the record store (relational ranch data) and the blob
store (photo bytes) that the backup engine reads from and restores into.
"""

from ranchvault.storage.blob_store import (
    BlobNotFoundError,
    BlobStore,
    BlobStoreError,
    BlobTransferError,
    HttpBlobStore,
    LocalBlobStore,
)
from ranchvault.storage.models import (
    ENTITY_ORDER,
    AnimalRecord,
    CustomFieldDefinition,
    CustomFieldValue,
    MedicalHistoryRecord,
    PhotoRecord,
    Ranch,
    RanchSettings,
    new_id,
    record_from_dict,
)
from ranchvault.storage.record_store import (
    ConstraintViolationError,
    IdMapping,
    RanchNotFoundError,
    RecordStore,
    SqliteRecordStore,
    StorageError,
    TransientStoreError,
)

__all__ = [
    # Models
    "ENTITY_ORDER",
    "Ranch",
    "RanchSettings",
    "CustomFieldDefinition",
    "AnimalRecord",
    "MedicalHistoryRecord",
    "CustomFieldValue",
    "PhotoRecord",
    "new_id",
    "record_from_dict",
    # Record store
    "RecordStore",
    "SqliteRecordStore",
    "StorageError",
    "TransientStoreError",
    "ConstraintViolationError",
    "IdMapping",
    "RanchNotFoundError",
    # Blob store
    "BlobStore",
    "LocalBlobStore",
    "HttpBlobStore",
    "BlobStoreError",
    "BlobNotFoundError",
    "BlobTransferError",
]
