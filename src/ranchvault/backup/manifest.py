"""
Archive manifest.

The manifest is the self-description of an archive: which ranch it came
from, when, how many records of each type it holds, and checksums for every
section and media item. It is stored as manifest.json, the last member of
the archive, because the checksums are only known once everything else has
been written.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

FORMAT_VERSION = "1"
SUPPORTED_FORMAT_VERSIONS = ("1",)
MANIFEST_PATH = "manifest.json"


def compute_aggregate_checksum(entity_checksums: dict[str, str]) -> str:
    """SHA-256 of the canonical JSON of the per-section checksums."""
    canonical = json.dumps(entity_checksums, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class MediaChecksum:
    """Checksum and size of one media member."""

    photo_id: str
    path: str
    sha256: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {"photoId": self.photo_id, "path": self.path, "sha256": self.sha256, "size": self.size}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MediaChecksum:
        return cls(
            photo_id=str(data["photoId"]),
            path=str(data["path"]),
            sha256=str(data["sha256"]),
            size=int(data["size"]),
        )


@dataclass
class MissingMedia:
    """A photo whose bytes could not be fetched during export."""

    photo_id: str
    path: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"photoId": self.photo_id, "path": self.path, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MissingMedia:
        return cls(
            photo_id=str(data["photoId"]),
            path=str(data["path"]),
            error=str(data.get("error", "")),
        )


@dataclass
class RanchSnapshotManifest:
    """
    Metadata describing an archive.

    Attributes:
        format_version: Archive format version.
        ranch_id: Ranch the archive was exported from.
        ranch_name: Name of that ranch, for display.
        exported_at: When the export finished writing records.
        generator: Name and version of the exporting tool.
        entity_counts: Records per entity type.
        entity_checksums: SHA-256 of each entities/<entity>.jsonl member.
        media_checksums: One entry per media member.
        missing_media: Photos whose bytes were unavailable at export.
        checksum: SHA-256 over entity_checksums (see compute_aggregate_checksum).
    """

    ranch_id: str
    ranch_name: str
    exported_at: datetime
    format_version: str = FORMAT_VERSION
    generator: str = ""
    entity_counts: dict[str, int] = field(default_factory=dict)
    entity_checksums: dict[str, str] = field(default_factory=dict)
    media_checksums: list[MediaChecksum] = field(default_factory=list)
    missing_media: list[MissingMedia] = field(default_factory=list)
    checksum: str = ""

    def seal(self) -> None:
        """Set checksum from the current entity checksums."""
        self.checksum = compute_aggregate_checksum(self.entity_checksums)

    @property
    def media_count(self) -> int:
        return len(self.media_checksums)

    def to_dict(self) -> dict[str, Any]:
        return {
            "formatVersion": self.format_version,
            "ranchId": self.ranch_id,
            "ranchName": self.ranch_name,
            "exportedAt": self.exported_at.isoformat(),
            "generator": self.generator,
            "entityCounts": dict(self.entity_counts),
            "entityChecksums": dict(self.entity_checksums),
            "mediaChecksums": [m.to_dict() for m in self.media_checksums],
            "missingMedia": [m.to_dict() for m in self.missing_media],
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RanchSnapshotManifest:
        """
        Parse a manifest dictionary.

        Raises:
            KeyError, TypeError, ValueError: If the manifest is malformed.
        """
        return cls(
            format_version=str(data["formatVersion"]),
            ranch_id=str(data["ranchId"]),
            ranch_name=str(data.get("ranchName", "")),
            exported_at=datetime.fromisoformat(data["exportedAt"]),
            generator=str(data.get("generator", "")),
            entity_counts={str(k): int(v) for k, v in data.get("entityCounts", {}).items()},
            entity_checksums={str(k): str(v) for k, v in data.get("entityChecksums", {}).items()},
            media_checksums=[MediaChecksum.from_dict(m) for m in data.get("mediaChecksums", [])],
            missing_media=[MissingMedia.from_dict(m) for m in data.get("missingMedia", [])],
            checksum=str(data.get("checksum", "")),
        )

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, sort_keys=False).encode("utf-8")
