"""
Restore orchestrator: imports an archive into a live ranch.

Order of operations:
    1. Take the per-ranch restore lock, refreshed at every batch and media
       item so a long restore never looks abandoned
    2. Check the target ranch exists
    3. Validate the archive (manifest version, checksums, counts)
    4. Consistency pass: decode every record, reject duplicate identifiers,
       and assign target identities (reconciliation pass 1)
    5. Replace mode only: delete the ranch's animals (cascading)
    6. Settings, custom field definitions
    7. Animals, inserted with null parents
    8. Parent links, rewritten in a second pass over the animals section
    9. Medical history, custom field values, photo rows (flagged unsynced)
   10. Photo bytes, each upload checksum-verified and retried; a success
       marks its row synced
   11. Release the lock

Nothing is written before step 5, so a malformed archive or a
reconciliation conflict never touches live data. There is no atomicity
across the record store and the blob store: a failed upload leaves its
photo row flagged rather than rolling anything back.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ranchvault.backup.archive import (
    ARCHIVE_READ_ERRORS,
    ArchiveReader,
    MediaEntry,
    spool_chunks,
)
from ranchvault.backup.errors import (
    ArchiveFormatError,
    MediaTransferError,
    ReconciliationError,
    RestoreError,
    RestoreLockError,
)
from ranchvault.backup.manifest import MediaChecksum, RanchSnapshotManifest
from ranchvault.backup.progress import CancellationToken, ProgressCallback, ProgressReporter
from ranchvault.backup.reconcile import (
    DUPLICATE_POLICIES,
    MODE_REPLACE,
    RESTORE_MODES,
    IdReconciliationMap,
    PhotoTarget,
)
from ranchvault.backup.retry import with_retry
from ranchvault.config.settings import RetryConfig, Settings
from ranchvault.storage.blob_store import BlobStore, BlobStoreError
from ranchvault.storage.models import (
    ENTITY_ANIMALS,
    ENTITY_FIELD_DEFINITIONS,
    ENTITY_FIELD_VALUES,
    ENTITY_MEDICAL_HISTORY,
    ENTITY_ORDER,
    ENTITY_PHOTOS,
    ENTITY_RANCH_SETTINGS,
)
from ranchvault.storage.record_store import RecordStore, StorageError

logger = logging.getLogger(__name__)

MEDIA_READ_CHUNK_SIZE = 64 * 1024


@dataclass
class RestoreOptions:
    """
    What to restore into, and how.

    Attributes:
        mode: "missing" (additive merge) or "replace" (delete animals first).
        ranch_id: Target ranch.
        duplicate_policy: Missing mode only; what to do with an archived
            animal whose identifier already exists in the ranch. None uses
            the configured default.
    """

    mode: str
    ranch_id: str
    duplicate_policy: str | None = None

    def __post_init__(self) -> None:
        if self.mode not in RESTORE_MODES:
            raise ValueError(
                f"Invalid restore mode: {self.mode}. Must be one of: {', '.join(RESTORE_MODES)}"
            )
        if self.duplicate_policy is not None and self.duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(
                f"Invalid duplicate policy: {self.duplicate_policy}. "
                f"Must be one of: {', '.join(DUPLICATE_POLICIES)}"
            )


@dataclass
class RestoreSummary:
    """Terminal summary of a restore."""

    mode: str
    ranch_id: str
    animals_restored: int = 0
    animals_skipped: int = 0
    animals_updated: int = 0
    animals_deleted: int = 0
    medical_records_restored: int = 0
    custom_field_values_restored: int = 0
    custom_fields_added: int = 0
    photos_restored: int = 0
    media_restored: int = 0
    media_failed: int = 0
    media_missing: int = 0
    records_skipped: int = 0
    records_dropped: int = 0
    records_skipped_by_entity: dict[str, int] = field(default_factory=dict)
    records_dropped_by_entity: dict[str, int] = field(default_factory=dict)
    parent_links_cleared: int = 0
    settings_restored: bool = False
    last_progress: str = ""
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _lock_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class _Checkpoint:
    """Run at every batch and media-item boundary of a locked restore."""

    record_store: RecordStore
    ranch_id: str
    holder: str
    token: CancellationToken
    retry: RetryConfig

    def __call__(self) -> None:
        """
        Stop if cancelled, otherwise restart the lock's TTL.

        Raises:
            OperationCancelledError: If the caller cancelled.
            RestoreLockError: If the lock was taken over as stale.
        """
        self.token.raise_if_cancelled()
        held = with_retry(
            self.record_store.refresh_lock,
            self.ranch_id,
            self.holder,
            config=self.retry,
            description="Refreshing restore lock",
        )
        if not held:
            raise RestoreLockError(
                self.ranch_id,
                f"Restore lock on ranch {self.ranch_id} was taken over by another restore",
            )


class RestoreOrchestrator:
    """
    Restores archives into a live ranch.

    Example:
        orchestrator = RestoreOrchestrator(record_store, blob_store, settings)
        summary = orchestrator.restore(
            Path("Home-Place-backup-20240115-093000.tar.gz"),
            RestoreOptions(mode="missing", ranch_id="ranch-1"),
            on_progress=print,
        )
        print(summary.animals_restored, summary.media_failed)
    """

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        config: Settings | None = None,
    ) -> None:
        self.record_store = record_store
        self.blob_store = blob_store
        self.config = config or Settings()

    def _store(self, func: Any, *args: Any, description: str) -> Any:
        """Call the record store, retrying transient failures."""
        return with_retry(func, *args, config=self.config.retry, description=description)

    def restore(
        self,
        archive_path: Path | str,
        options: RestoreOptions,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RestoreSummary:
        """
        Restore an archive into options.ranch_id.

        Returns:
            RestoreSummary with per-entity counts and media outcomes.

        Raises:
            RestoreLockError: If another restore holds the ranch's lock, or took it
                over while this one was running.
            RestoreError: If the target ranch does not exist or the store fails.
            ArchiveFormatError: If the archive is invalid (nothing was written).
            ReconciliationError: If identifiers cannot be reconciled (nothing was written).
            OperationCancelledError: If cancelled between batches or media items.
        """
        ranch_id = options.ranch_id
        holder = _lock_holder()

        try:
            acquired = self._store(
                self.record_store.acquire_lock,
                ranch_id,
                holder,
                self.config.restore.lock_ttl_seconds,
                description="Acquiring restore lock",
            )
        except StorageError as e:
            raise RestoreError(f"Could not acquire restore lock: {e}") from e
        if not acquired:
            raise RestoreLockError(ranch_id)

        logger.info(f"Acquired restore lock on ranch {ranch_id} as {holder}")

        checkpoint = _Checkpoint(
            self.record_store, ranch_id, holder, cancel_token or CancellationToken(), self.config.retry
        )
        try:
            return self._restore_locked(Path(archive_path), options, on_progress, checkpoint)
        except StorageError as e:
            raise RestoreError(f"Record store failure during restore: {e}") from e
        finally:
            try:
                self.record_store.release_lock(ranch_id, holder)
            except StorageError as e:
                logger.error(f"Could not release restore lock on ranch {ranch_id}: {e}")
            else:
                logger.info(f"Released restore lock on ranch {ranch_id}")

    def _restore_locked(
        self,
        archive_path: Path,
        options: RestoreOptions,
        on_progress: ProgressCallback | None,
        checkpoint: _Checkpoint,
    ) -> RestoreSummary:
        ranch_id = options.ranch_id
        restore_config = self.config.restore
        batch_size = restore_config.batch_size
        policy = options.duplicate_policy or restore_config.duplicate_policy

        reporter = ProgressReporter(
            on_progress,
            every=restore_config.progress_every,
            interval_seconds=restore_config.progress_interval_seconds,
        )
        summary = RestoreSummary(mode=options.mode, ranch_id=ranch_id)

        ranch = self._store(self.record_store.get_ranch, ranch_id, description="Fetching ranch")
        if ranch is None:
            raise RestoreError(f"Target ranch not found: {ranch_id}")

        reporter.phase("Reading backup file...")
        reader = ArchiveReader(archive_path, spool_max_bytes=self.config.export.spool_max_bytes)
        manifest = reader.validate()
        reporter.phase(
            f"Found backup of {manifest.ranch_name} with "
            f"{manifest.entity_counts.get(ENTITY_ANIMALS, 0)} animals"
        )

        recon = IdReconciliationMap(self.record_store, ranch_id, options.mode, policy)
        self._consistency_pass(reader, recon, batch_size, checkpoint)
        reporter.phase("Backup validated")

        # First live mutation
        if options.mode == MODE_REPLACE:
            checkpoint()
            reporter.phase("Deleting existing animals...")
            summary.animals_deleted = self._store(
                self.record_store.delete_animals, ranch_id, description="Deleting animals"
            )

        summary.settings_restored = self._restore_settings(reader, options, batch_size)

        reporter.phase("Restoring custom fields...")
        if recon.pending_field_definitions:
            summary.custom_fields_added = self._store(
                self.record_store.insert_records,
                ENTITY_FIELD_DEFINITIONS,
                recon.pending_field_definitions,
                recon.id_mappings(ENTITY_FIELD_DEFINITIONS, recon.pending_field_definitions),
                description="Inserting custom fields",
            )

        reporter.phase(f"Restoring {recon.animals_to_insert} animals...")
        for batch in reader.iter_batches(ENTITY_ANIMALS, batch_size):
            checkpoint()
            inserts = []
            for animal in batch:
                prepared = recon.prepare_animal(animal)
                if prepared is None:
                    continue
                if animal.id in recon.updated_animals:
                    self._store(self.record_store.update_animal, prepared, description="Updating animal")
                else:
                    inserts.append(prepared)
            summary.animals_restored += self._store(
                self.record_store.insert_records,
                ENTITY_ANIMALS,
                inserts,
                recon.id_mappings(ENTITY_ANIMALS, inserts),
                description="Inserting animals",
            )
            reporter.update(f"Restored {summary.animals_restored} animals...")

        reporter.phase("Linking parents...")
        for batch in reader.iter_batches(ENTITY_ANIMALS, batch_size):
            checkpoint()
            for animal in batch:
                target_id = recon.target_animal_id(animal.id)
                if target_id is None:
                    continue
                mother_id, father_id = recon.resolve_parents(animal)
                if mother_id or father_id or animal.id in recon.updated_animals:
                    self._store(
                        self.record_store.set_animal_parents,
                        target_id,
                        mother_id,
                        father_id,
                        description="Linking parents",
                    )

        reporter.phase("Restoring medical history...")
        summary.medical_records_restored = self._restore_subordinates(
            reader, recon, ENTITY_MEDICAL_HISTORY, batch_size, checkpoint
        )

        reporter.phase("Restoring custom field values...")
        summary.custom_field_values_restored = self._restore_subordinates(
            reader, recon, ENTITY_FIELD_VALUES, batch_size, checkpoint
        )

        reporter.phase("Restoring photo records...")
        summary.photos_restored = self._restore_subordinates(
            reader, recon, ENTITY_PHOTOS, batch_size, checkpoint
        )

        self._restore_media(reader, manifest, recon, summary, reporter, checkpoint)

        summary.animals_skipped = recon.stats.animals_skipped
        summary.animals_updated = recon.stats.animals_updated
        summary.parent_links_cleared = recon.stats.parent_links_cleared
        summary.records_skipped = recon.records_skipped()
        summary.records_dropped = recon.records_dropped()
        summary.records_skipped_by_entity = dict(recon.stats.records_skipped)
        summary.records_dropped_by_entity = dict(recon.stats.records_dropped)

        reporter.phase("Restore complete")
        summary.last_progress = reporter.last_message

        logger.info(
            f"Restored archive {archive_path.name} into ranch {ranch_id} ({options.mode}): "
            f"{summary.animals_restored} animals restored, {summary.animals_skipped} skipped, "
            f"{summary.media_restored} photos uploaded, {summary.media_failed} failed"
        )
        return summary

    def _consistency_pass(
        self,
        reader: ArchiveReader,
        recon: IdReconciliationMap,
        batch_size: int,
        checkpoint: _Checkpoint,
    ) -> None:
        """
        Decode every record once before anything is written.

        Runs pass 1 of the reconciliation and rejects identifiers repeated
        within a section.

        Raises:
            ArchiveFormatError: If a record cannot be decoded.
            ReconciliationError: On duplicate identifiers or a policy conflict.
        """
        for entity in ENTITY_ORDER:
            seen: set[str] = set()
            for batch in reader.iter_batches(entity, batch_size):
                checkpoint()
                for record in batch:
                    if record.id in seen:
                        raise ReconciliationError(
                            f"Duplicate {entity} identifier in archive: {record.id}",
                            entity=entity,
                            record_id=record.id,
                        )
                    seen.add(record.id)

                if entity == ENTITY_FIELD_DEFINITIONS:
                    recon.register_field_definitions(batch)
                elif entity == ENTITY_ANIMALS:
                    recon.register_animals(batch)

            if entity == ENTITY_RANCH_SETTINGS and len(seen) > 1:
                raise ReconciliationError(
                    f"Archive holds {len(seen)} settings records; expected at most one",
                    entity=entity,
                )

    def _restore_settings(
        self, reader: ArchiveReader, options: RestoreOptions, batch_size: int
    ) -> bool:
        """Replace mode overwrites settings; missing mode only fills them in."""
        for batch in reader.iter_batches(ENTITY_RANCH_SETTINGS, batch_size):
            for settings in batch:
                if options.mode != MODE_REPLACE:
                    existing = self._store(
                        self.record_store.get_settings, options.ranch_id, description="Reading settings"
                    )
                    if existing is not None:
                        return False
                settings.ranch_id = options.ranch_id
                self._store(self.record_store.save_settings, settings, description="Saving settings")
                return True
        return False

    def _restore_subordinates(
        self,
        reader: ArchiveReader,
        recon: IdReconciliationMap,
        entity: str,
        batch_size: int,
        checkpoint: _Checkpoint,
    ) -> int:
        restored = 0
        for batch in reader.iter_batches(entity, batch_size):
            checkpoint()
            prepared = recon.prepare_subordinates(entity, batch)
            restored += self._store(
                self.record_store.insert_records,
                entity,
                prepared,
                recon.id_mappings(entity, prepared),
                description=f"Inserting {entity}",
            )
        return restored

    def _restore_media(
        self,
        reader: ArchiveReader,
        manifest: RanchSnapshotManifest,
        recon: IdReconciliationMap,
        summary: RestoreSummary,
        reporter: ProgressReporter,
        checkpoint: _Checkpoint,
    ) -> None:
        """Upload photo bytes for every restored photo row."""
        by_member = {item.path: item for item in manifest.media_checksums}
        total = len(recon.photo_targets)
        uploaded: set[str] = set()

        reporter.phase(f"Restoring photos (0/{total})...")

        if total:
            for entry in reader.iter_media():
                checkpoint()
                checksum = by_member.get(entry.path)
                if checksum is None:
                    logger.warning(f"Ignoring media not listed in manifest: {entry.path}")
                    continue
                target = recon.photo_targets.get(checksum.photo_id)
                if target is None:
                    continue

                uploaded.add(checksum.photo_id)
                reporter.update(f"Restoring photos ({len(uploaded)}/{total})...")
                try:
                    self._upload(entry, checksum, target)
                except MediaTransferError as e:
                    summary.media_failed += 1
                    summary.errors.append(str(e))
                    logger.warning(f"Photo {target.photo_id} left unsynced: {e}")
                    continue

                self._store(
                    self.record_store.set_photo_synced, target.photo_id, True, description="Marking photo synced"
                )
                summary.media_restored += 1

        summary.media_missing = total - len(uploaded)
        if summary.media_missing:
            logger.warning(f"{summary.media_missing} restored photos have no bytes in the archive")

    def _upload(self, entry: MediaEntry, checksum: MediaChecksum, target: PhotoTarget) -> None:
        """
        Spool one media member, verify it, and upload it with retries.

        Raises:
            MediaTransferError: On checksum mismatch or a failed upload.
        """
        try:
            item = spool_chunks(
                iter(lambda: entry.fileobj.read(MEDIA_READ_CHUNK_SIZE), b""),
                self.config.export.spool_max_bytes,
            )
        except ARCHIVE_READ_ERRORS as e:
            raise ArchiveFormatError(
                f"Archive is corrupt or truncated: {e}", member=entry.path
            ) from e

        try:
            if item.sha256 != checksum.sha256 or item.size != checksum.size:
                raise MediaTransferError(
                    f"Checksum mismatch for {entry.path}", path=target.storage_path
                )

            def attempt() -> None:
                item.fileobj.seek(0)
                self.blob_store.put(
                    target.storage_path, item.fileobj, item.size, target.media_type
                )

            try:
                with_retry(
                    attempt,
                    config=self.config.retry,
                    max_retries=self.config.restore.media_retries,
                    description=f"Uploading {target.storage_path}",
                )
            except (BlobStoreError, ConnectionError, TimeoutError) as e:
                raise MediaTransferError(
                    f"Upload of {target.storage_path} failed: {e}", path=target.storage_path
                ) from e
        finally:
            item.close()

