"""
Media collection for exports.

Streams each photo's bytes from the blob store into the archive. A photo
whose bytes cannot be fetched (missing object, permanent error, transient
error that outlasted its retries) becomes a missing-media marker in the
manifest; it never aborts the export.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ranchvault.backup.archive import ArchiveWriter, media_member_name
from ranchvault.backup.errors import MediaTransferError
from ranchvault.backup.manifest import MediaChecksum, MissingMedia
from ranchvault.backup.progress import CancellationToken, ProgressReporter
from ranchvault.backup.retry import with_retry
from ranchvault.config.settings import RetryConfig
from ranchvault.storage.blob_store import BlobStore, BlobStoreError
from ranchvault.storage.models import PhotoRecord

logger = logging.getLogger(__name__)


class MediaCollector:
    """
    Copies photo blobs into an archive, one item in flight at a time.

    Attributes:
        blob_store: Source of photo bytes.
        retry_config: Backoff for transient fetch failures.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        retry_config: RetryConfig | None = None,
        reporter: ProgressReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.blob_store = blob_store
        self.retry_config = retry_config or RetryConfig()
        self.reporter = reporter or ProgressReporter()
        self.cancel_token = cancel_token or CancellationToken()

    def member_name_for(self, writer: ArchiveWriter, photo: PhotoRecord) -> str:
        """
        Archive path for a photo's bytes.

        Two photos of one animal can share a filename; the later one gets
        its photo id prefixed to the filename.
        """
        name = media_member_name(photo.storage_path)
        if writer.has_member(name):
            name = media_member_name(
                f"{photo.ranch_id}/{photo.animal_id}/{photo.id}-{photo.filename}"
            )
        return name

    def fetch_into(self, writer: ArchiveWriter, name: str, photo: PhotoRecord) -> MediaChecksum:
        """
        Stream one photo into the archive.

        Raises:
            MediaTransferError: If the bytes could not be fetched.
        """

        def attempt() -> tuple[int, str]:
            return writer.add_media(name, self.blob_store.get(photo.storage_path))

        try:
            size, sha256 = with_retry(
                attempt,
                config=self.retry_config,
                description=f"Fetching {photo.storage_path}",
            )
        except (BlobStoreError, ConnectionError, TimeoutError) as e:
            raise MediaTransferError(
                f"Could not fetch {photo.storage_path}: {e}", path=photo.storage_path
            ) from e

        return MediaChecksum(photo_id=photo.id, path=name, sha256=sha256, size=size)

    def collect(
        self,
        writer: ArchiveWriter,
        photos: Iterable[PhotoRecord],
        total: int,
    ) -> tuple[list[MediaChecksum], list[MissingMedia]]:
        """
        Copy every photo's bytes into the archive.

        Args:
            writer: Open archive writer.
            photos: Photo records, typically paged from the record store.
            total: Number of photos, for progress text.

        Returns:
            Tuple of (checksums of copied items, markers for missing items).
        """
        checksums: list[MediaChecksum] = []
        missing: list[MissingMedia] = []

        self.reporter.phase(f"Backing up photos (0/{total})...")

        for index, photo in enumerate(photos, 1):
            self.cancel_token.raise_if_cancelled()
            self.reporter.update(f"Backing up photos ({index}/{total})...")

            name = self.member_name_for(writer, photo)
            try:
                checksums.append(self.fetch_into(writer, name, photo))
            except MediaTransferError as e:
                logger.warning(f"Photo {photo.id} will be missing from the archive: {e}")
                missing.append(
                    MissingMedia(photo_id=photo.id, path=photo.storage_path, error=str(e))
                )

        if missing:
            logger.warning(f"{len(missing)} of {total} photos could not be backed up")
        return checksums, missing
