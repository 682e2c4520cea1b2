"""
Snapshot builder: exports one ranch to an archive.

The builder pages through every entity type in ENTITY_ORDER, writes each
as an archive section, copies photo bytes through the MediaCollector, and
finishes with the manifest. No table is ever held in memory whole.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ranchvault import __version__
from ranchvault.backup.archive import ArchiveWriter, archive_filename
from ranchvault.backup.errors import ExportError, OperationCancelledError
from ranchvault.backup.manifest import MissingMedia, RanchSnapshotManifest
from ranchvault.backup.media import MediaCollector
from ranchvault.backup.progress import CancellationToken, ProgressCallback, ProgressReporter
from ranchvault.backup.retry import with_retry
from ranchvault.config.settings import Settings
from ranchvault.storage.blob_store import BlobStore
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

SECTION_LABELS = {
    ENTITY_RANCH_SETTINGS: "ranch settings",
    ENTITY_FIELD_DEFINITIONS: "custom fields",
    ENTITY_MEDICAL_HISTORY: "medical history",
    ENTITY_FIELD_VALUES: "custom field values",
    ENTITY_PHOTOS: "photo records",
}


@dataclass
class ExportResult:
    """Result of an export."""

    path: Path
    manifest: RanchSnapshotManifest
    size_bytes: int
    missing_media: list[MissingMedia] = field(default_factory=list)
    last_progress: str = ""


class SnapshotBuilder:
    """
    Exports a ranch to a portable archive.

    Example:
        builder = SnapshotBuilder(record_store, blob_store, settings)
        result = builder.export("ranch-id", on_progress=print)
        print(result.path, result.manifest.entity_counts)
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

    def _read(self, func: Any, *args: Any, description: str) -> Any:
        return with_retry(func, *args, config=self.config.retry, description=description)

    def _pages(
        self, entity: str, ranch_id: str, cancel_token: CancellationToken
    ) -> Iterator[list[Any]]:
        """Page through one entity type, retrying each page read."""
        cursor: Any = None
        while True:
            cancel_token.raise_if_cancelled()
            records, cursor = self._read(
                self.record_store.fetch_page,
                entity,
                ranch_id,
                self.config.export.page_size,
                cursor,
                description=f"Reading {entity}",
            )
            if records:
                yield records
            if cursor is None:
                return

    def _records(
        self, entity: str, ranch_id: str, cancel_token: CancellationToken
    ) -> Iterator[Any]:
        for page in self._pages(entity, ranch_id, cancel_token):
            yield from page

    def export(
        self,
        ranch_id: str,
        output_dir: Path | str | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExportResult:
        """
        Export a ranch.

        Args:
            ranch_id: Ranch to export.
            output_dir: Directory for the archive. Defaults to export.output_dir.
            on_progress: Called with human-readable phase text.
            cancel_token: Checked between batches and media items.

        Returns:
            ExportResult describing the written archive.

        Raises:
            ExportError: If the ranch does not exist or the store stays unavailable.
            OperationCancelledError: If cancelled; no archive is left behind.
        """
        export_config = self.config.export
        reporter = ProgressReporter(
            on_progress,
            every=export_config.progress_every,
            interval_seconds=export_config.progress_interval_seconds,
        )
        token = cancel_token or CancellationToken()

        reporter.phase("Fetching ranch...")
        try:
            ranch = self._read(self.record_store.get_ranch, ranch_id, description="Fetching ranch")
        except StorageError as e:
            raise ExportError(f"Record store unavailable: {e}") from e
        if ranch is None:
            raise ExportError(f"Ranch not found: {ranch_id}")

        directory = Path(output_dir or export_config.output_dir).expanduser()
        path = directory / archive_filename(ranch.name)

        manifest = RanchSnapshotManifest(
            ranch_id=ranch.id,
            ranch_name=ranch.name,
            exported_at=datetime.now(UTC),
            generator=f"ranchvault {__version__}",
        )

        logger.info(f"Exporting ranch {ranch.name} ({ranch.id}) to {path}")

        try:
            with ArchiveWriter(
                path,
                compression_level=export_config.compression_level,
                spool_max_bytes=export_config.spool_max_bytes,
            ) as writer:
                for entity in ENTITY_ORDER:
                    token.raise_if_cancelled()
                    if entity == ENTITY_ANIMALS:
                        total = self._read(
                            self.record_store.count, entity, ranch_id, description="Counting animals"
                        )
                        reporter.phase(f"Backing up {total} animals...")
                    else:
                        reporter.phase(f"Backing up {SECTION_LABELS[entity]}...")

                    count, sha256 = writer.write_section(
                        entity, self._pages(entity, ranch_id, token)
                    )
                    manifest.entity_counts[entity] = count
                    manifest.entity_checksums[entity] = sha256

                collector = MediaCollector(self.blob_store, self.config.retry, reporter, token)
                manifest.media_checksums, manifest.missing_media = collector.collect(
                    writer,
                    self._records(ENTITY_PHOTOS, ranch_id, token),
                    manifest.entity_counts[ENTITY_PHOTOS],
                )

                reporter.phase("Writing manifest...")
                writer.finish(manifest)
        except OperationCancelledError:
            logger.info(f"Export of ranch {ranch_id} cancelled")
            raise
        except StorageError as e:
            raise ExportError(f"Record store read failed: {e}") from e
        except OSError as e:
            raise ExportError(f"Cannot write archive {path}: {e}") from e

        size_bytes = path.stat().st_size
        reporter.phase("Backup complete")
        logger.info(
            f"Exported ranch {ranch.name}: {manifest.entity_counts.get(ENTITY_ANIMALS, 0)} animals, "
            f"{manifest.media_count} photos, {len(manifest.missing_media)} missing "
            f"({size_bytes:,} bytes)"
        )

        return ExportResult(
            path=path,
            manifest=manifest,
            size_bytes=size_bytes,
            missing_media=list(manifest.missing_media),
            last_progress=reporter.last_message,
        )
