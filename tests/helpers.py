"""Shared fixtures for archive and restore tests."""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ranchvault.backup.archive import ArchiveWriter, media_member_name
from ranchvault.backup.manifest import MediaChecksum, MissingMedia, RanchSnapshotManifest
from ranchvault.config.settings import Settings
from ranchvault.storage.models import ENTITY_ORDER


def fast_settings(root: Path) -> Settings:
    """Settings pointing at a temp dir, with no backoff delay."""
    settings = Settings()
    settings.data_dir = str(root / "data")
    settings.blob_store.root = str(root / "blobs")
    settings.export.output_dir = str(root / "backups")
    settings.export.page_size = 2
    settings.restore.batch_size = 2
    settings.retry.base_delay = 0.0
    settings.retry.max_delay = 0.0
    return settings


def write_archive(
    path: Path,
    sections: dict[str, list[Any]] | None = None,
    media: list[tuple[str, str, bytes]] | None = None,
    missing: list[tuple[str, str]] | None = None,
    ranch_id: str = "source-ranch",
    ranch_name: str = "Source Ranch",
) -> Path:
    """
    Write an archive directly from records.

    Args:
        sections: entity -> records; absent entities are written empty.
        media: (photo_id, storage_path, bytes) per media member.
        missing: (photo_id, storage_path) per missing-media marker.
    """
    sections = sections or {}
    manifest = RanchSnapshotManifest(
        ranch_id=ranch_id,
        ranch_name=ranch_name,
        exported_at=datetime.now(UTC),
        generator="tests",
    )
    with ArchiveWriter(path) as writer:
        for entity in ENTITY_ORDER:
            count, sha256 = writer.write_section(entity, [sections.get(entity, [])])
            manifest.entity_counts[entity] = count
            manifest.entity_checksums[entity] = sha256
        for photo_id, storage_path, data in media or []:
            name = media_member_name(storage_path)
            size, sha256 = writer.add_media(name, [data])
            manifest.media_checksums.append(
                MediaChecksum(photo_id=photo_id, path=name, sha256=sha256, size=size)
            )
        for photo_id, storage_path in missing or []:
            manifest.missing_media.append(
                MissingMedia(photo_id=photo_id, path=storage_path, error="Blob not found")
            )
        writer.finish(manifest)
    return path


def read_members(path: Path) -> list[tuple[str, bytes]]:
    with tarfile.open(path, "r:gz") as tar:
        members = []
        for member in tar.getmembers():
            fileobj = tar.extractfile(member)
            members.append((member.name, fileobj.read() if fileobj else b""))
    return members


def write_members(path: Path, members: list[tuple[str, bytes]]) -> Path:
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members:
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


def rewrite_archive(
    path: Path, transform: Callable[[str, bytes], bytes | None]
) -> Path:
    """Rewrite every member through transform; returning None drops the member."""
    members = []
    for name, data in read_members(path):
        new_data = transform(name, data)
        if new_data is not None:
            members.append((name, new_data))
    return write_members(path, members)
