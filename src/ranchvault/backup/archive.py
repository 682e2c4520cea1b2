"""
Archive writer and reader.

An archive is a gzip-compressed tar file laid out as:

    entities/ranch_settings.jsonl
    entities/custom_field_definitions.jsonl
    entities/animals.jsonl
    entities/medical_history.jsonl
    entities/custom_field_values.jsonl
    entities/animal_photos.jsonl
    media/<ranch_id>/<animal_id>/<filename>    (one per photo with bytes)
    manifest.json                              (always last)

Entity sections are JSON Lines, one record per line, written in the fixed
ENTITY_ORDER. Media paths mirror the live blob layout.

Tar needs every member's size before its data, so each section and media
item is first spooled into a SpooledTemporaryFile (memory up to a limit,
then disk) while its checksum is computed, and then added in one go. At
most one member is in flight at a time.

Reading is lazy. Every iterator reopens the archive in streaming mode
("r|gz"), so sequences are restartable only by reopening and no seeking
is needed. Nothing is yielded until validate() has passed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tarfile
import tempfile
import time
import zlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Any

from ranchvault.backup.errors import ArchiveFormatError
from ranchvault.backup.manifest import (
    MANIFEST_PATH,
    SUPPORTED_FORMAT_VERSIONS,
    RanchSnapshotManifest,
    compute_aggregate_checksum,
)
from ranchvault.storage.models import ENTITY_ORDER, record_from_dict

logger = logging.getLogger(__name__)

ENTITY_DIR = "entities"
MEDIA_DIR = "media"
ARCHIVE_SUFFIX = ".tar.gz"
PARTIAL_SUFFIX = ".partial"
DEFAULT_SPOOL_MAX_BYTES = 8 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024

# Everything a damaged gzip or tar stream can raise while being read
ARCHIVE_READ_ERRORS: tuple[type[BaseException], ...] = (
    tarfile.TarError,
    EOFError,
    zlib.error,
    OSError,
)


def entity_member_name(entity: str) -> str:
    return f"{ENTITY_DIR}/{entity}.jsonl"


def media_member_name(storage_path: str) -> str:
    return f"{MEDIA_DIR}/{storage_path.strip('/')}"


def archive_filename(ranch_name: str, when: datetime | None = None) -> str:
    """
    Build the archive file name for a ranch, e.g. Home-Place-backup-20240115-093000.tar.gz
    """
    when = when or datetime.now()
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", ranch_name).strip("-.") or "ranch"
    return f"{slug}-backup-{when.strftime('%Y%m%d-%H%M%S')}{ARCHIVE_SUFFIX}"


@dataclass
class SpooledItem:
    """A fully buffered member ready to be added to a tar file."""

    fileobj: IO[bytes]
    size: int
    sha256: str

    def close(self) -> None:
        self.fileobj.close()


def spool_chunks(chunks: Iterable[bytes], max_bytes: int = DEFAULT_SPOOL_MAX_BYTES) -> SpooledItem:
    """
    Drain chunks into a spooled temp file, hashing as it goes.

    If the chunk iterator raises, the spool is discarded and the exception
    propagates, so a failed fetch never leaves a partial member.
    """
    spool = tempfile.SpooledTemporaryFile(max_size=max_bytes)
    hasher = hashlib.sha256()
    size = 0
    try:
        for chunk in chunks:
            spool.write(chunk)
            hasher.update(chunk)
            size += len(chunk)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return SpooledItem(fileobj=spool, size=size, sha256=hasher.hexdigest())


def _encode_records(batches: Iterable[list[Any]], counter: list[int]) -> Iterator[bytes]:
    for batch in batches:
        for record in batch:
            data = record.to_dict() if hasattr(record, "to_dict") else record
            line = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
            counter[0] += 1
            yield line.encode("utf-8") + b"\n"


class ArchiveWriter:
    """
    Writes one archive.

    Data goes to <path>.partial and is renamed into place by finish(); on
    abort() (or an exception inside a with block) the partial file is
    removed, so a failed or cancelled export never leaves an archive behind.

    Example:
        with ArchiveWriter(path) as writer:
            writer.write_section("animals", pages)
            writer.add_media("media/r1/a1/calf.jpg", blob_chunks)
            writer.finish(manifest)
    """

    def __init__(
        self,
        path: Path,
        compression_level: int = 6,
        spool_max_bytes: int = DEFAULT_SPOOL_MAX_BYTES,
    ) -> None:
        self.path = Path(path)
        self.partial_path = self.path.with_name(self.path.name + PARTIAL_SUFFIX)
        self.compression_level = compression_level
        self.spool_max_bytes = spool_max_bytes
        self._tar: tarfile.TarFile | None = None
        self._members: set[str] = set()
        self._finished = False

    def __enter__(self) -> ArchiveWriter:
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is not None or not self._finished:
            self.abort()

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._tar = tarfile.open(
            self.partial_path, "w:gz", compresslevel=self.compression_level
        )

    def has_member(self, name: str) -> bool:
        return name in self._members

    def _add(self, name: str, item: SpooledItem) -> None:
        if self._tar is None:
            raise RuntimeError("Archive writer is not open")
        if name in self._members:
            raise ValueError(f"Duplicate archive member: {name}")

        tarinfo = tarfile.TarInfo(name=name)
        tarinfo.size = item.size
        tarinfo.mtime = int(time.time())
        tarinfo.mode = 0o644
        try:
            self._tar.addfile(tarinfo, item.fileobj)
        finally:
            item.close()
        self._members.add(name)

    def write_section(self, entity: str, batches: Iterable[list[Any]]) -> tuple[int, str]:
        """
        Write one entity section from an iterable of record batches.

        Returns:
            Tuple of (record count, sha256 of the section).
        """
        counter = [0]
        item = spool_chunks(_encode_records(batches, counter), self.spool_max_bytes)
        sha256 = item.sha256
        self._add(entity_member_name(entity), item)
        logger.debug(f"Wrote section {entity}: {counter[0]} records")
        return counter[0], sha256

    def add_media(self, name: str, chunks: Iterable[bytes]) -> tuple[int, str]:
        """
        Add one media member, streamed from chunks.

        Returns:
            Tuple of (byte size, sha256).
        """
        item = spool_chunks(chunks, self.spool_max_bytes)
        size, sha256 = item.size, item.sha256
        self._add(name, item)
        return size, sha256

    def finish(self, manifest: RanchSnapshotManifest) -> Path:
        """Write the manifest, close the container and move it into place."""
        manifest.seal()
        data = manifest.to_json()
        spool = tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes)
        spool.write(data)
        spool.seek(0)
        self._add(
            MANIFEST_PATH,
            SpooledItem(fileobj=spool, size=len(data), sha256=hashlib.sha256(data).hexdigest()),
        )

        assert self._tar is not None
        self._tar.close()
        self._tar = None
        os.replace(self.partial_path, self.path)
        self._finished = True

        logger.info(f"Archive written: {self.path}")
        return self.path

    def abort(self) -> None:
        """Discard the partial archive."""
        if self._tar is not None:
            try:
                self._tar.close()
            except (OSError, tarfile.TarError) as e:
                logger.debug(f"Error closing aborted archive: {e}")
            self._tar = None
        if self.partial_path.exists():
            self.partial_path.unlink()
            logger.info(f"Removed partial archive {self.partial_path}")


@dataclass
class MediaEntry:
    """
    One media member during iteration.

    fileobj is only readable until the iterator advances.
    """

    path: str
    size: int
    fileobj: IO[bytes]

    @property
    def storage_path(self) -> str:
        """The member path with the media/ prefix removed."""
        return self.path[len(MEDIA_DIR) + 1:]


@dataclass
class _ScanResult:
    manifest: RanchSnapshotManifest | None
    manifest_error: str | None
    section_checksums: dict[str, str]
    section_counts: dict[str, int]
    media_checksums: dict[str, str]
    member_count: int
    manifest_last: bool


class ArchiveReader:
    """
    Reads and validates an archive.

    Example:
        reader = ArchiveReader(path)
        manifest = reader.validate()
        for batch in reader.iter_batches("animals", 500):
            ...
    """

    def __init__(self, path: Path, spool_max_bytes: int = DEFAULT_SPOOL_MAX_BYTES) -> None:
        self.path = Path(path)
        self.spool_max_bytes = spool_max_bytes
        self._manifest: RanchSnapshotManifest | None = None
        self._validated = False

    @property
    def manifest(self) -> RanchSnapshotManifest | None:
        return self._manifest

    def _open_stream(self) -> tarfile.TarFile:
        if not self.path.is_file():
            raise ArchiveFormatError(f"Archive not found: {self.path}")
        try:
            return tarfile.open(self.path, "r|gz")
        except ARCHIVE_READ_ERRORS as e:
            raise ArchiveFormatError(f"Not a valid archive: {self.path}: {e}") from e

    def _scan(self, hash_media: bool = False) -> _ScanResult:
        """Stream the whole archive once, hashing sections (and optionally media)."""
        manifest = None
        manifest_error = None
        section_checksums: dict[str, str] = {}
        section_counts: dict[str, int] = {}
        media_checksums: dict[str, str] = {}
        member_count = 0
        last_name = ""

        tar = self._open_stream()
        try:
            with tar:
                for member in tar:
                    member_count += 1
                    last_name = member.name
                    if not member.isfile():
                        continue

                    if member.name == MANIFEST_PATH:
                        fileobj = tar.extractfile(member)
                        assert fileobj is not None
                        try:
                            manifest = RanchSnapshotManifest.from_dict(json.load(fileobj))
                        except (ValueError, KeyError, TypeError, AttributeError) as e:
                            manifest_error = f"Malformed manifest: {e}"
                    elif member.name.startswith(f"{ENTITY_DIR}/") and member.name.endswith(".jsonl"):
                        entity = member.name[len(ENTITY_DIR) + 1:-len(".jsonl")]
                        fileobj = tar.extractfile(member)
                        assert fileobj is not None
                        hasher = hashlib.sha256()
                        lines = 0
                        for line in fileobj:
                            hasher.update(line)
                            if line.strip():
                                lines += 1
                        section_checksums[entity] = hasher.hexdigest()
                        section_counts[entity] = lines
                    elif hash_media and member.name.startswith(f"{MEDIA_DIR}/"):
                        fileobj = tar.extractfile(member)
                        assert fileobj is not None
                        hasher = hashlib.sha256()
                        while chunk := fileobj.read(READ_CHUNK_SIZE):
                            hasher.update(chunk)
                        media_checksums[member.name] = hasher.hexdigest()
        except ARCHIVE_READ_ERRORS as e:
            raise ArchiveFormatError(f"Archive is corrupt or truncated: {e}") from e

        return _ScanResult(
            manifest=manifest,
            manifest_error=manifest_error,
            section_checksums=section_checksums,
            section_counts=section_counts,
            media_checksums=media_checksums,
            member_count=member_count,
            manifest_last=last_name == MANIFEST_PATH,
        )

    def _check(self, scan: _ScanResult) -> list[str]:
        if scan.member_count == 0:
            return ["Archive is empty"]
        if scan.manifest_error:
            return [scan.manifest_error]
        if scan.manifest is None:
            return ["Manifest file not found in archive"]

        manifest = scan.manifest
        if manifest.format_version not in SUPPORTED_FORMAT_VERSIONS:
            return [
                f"Unsupported archive format version {manifest.format_version} "
                f"(supported: {', '.join(SUPPORTED_FORMAT_VERSIONS)})"
            ]

        problems: list[str] = []
        if not scan.manifest_last:
            problems.append("Manifest is not the last archive member")

        if manifest.checksum != compute_aggregate_checksum(manifest.entity_checksums):
            problems.append("Manifest checksum does not match its entity checksums")

        for entity in ENTITY_ORDER:
            if entity not in scan.section_checksums:
                problems.append(f"Section missing: {entity_member_name(entity)}")
                continue

            expected = manifest.entity_checksums.get(entity)
            actual = scan.section_checksums[entity]
            if expected != actual:
                problems.append(
                    f"Checksum mismatch for {entity_member_name(entity)}: "
                    f"expected {str(expected)[:16]}..., got {actual[:16]}..."
                )

            expected_count = manifest.entity_counts.get(entity)
            if expected_count != scan.section_counts[entity]:
                problems.append(
                    f"Record count mismatch for {entity}: manifest says "
                    f"{expected_count}, section holds {scan.section_counts[entity]}"
                )

        for entity in scan.section_checksums:
            if entity not in ENTITY_ORDER:
                problems.append(f"Unknown section: {entity_member_name(entity)}")

        return problems

    def _check_media(self, manifest: RanchSnapshotManifest, media: dict[str, str]) -> list[str]:
        problems = []
        for item in manifest.media_checksums:
            actual = media.get(item.path)
            if actual is None:
                problems.append(f"Media not found in archive: {item.path}")
            elif actual != item.sha256:
                problems.append(
                    f"Checksum mismatch for {item.path}: "
                    f"expected {item.sha256[:16]}..., got {actual[:16]}..."
                )
        return problems

    def read_manifest(self) -> RanchSnapshotManifest:
        """
        Read the manifest without validating anything else.

        Raises:
            ArchiveFormatError: If the archive or its manifest is unreadable.
        """
        if self._manifest is not None:
            return self._manifest

        scan = self._scan()
        if scan.manifest is None:
            raise ArchiveFormatError(scan.manifest_error or "Manifest file not found in archive")
        self._manifest = scan.manifest
        return scan.manifest

    def validate(self) -> RanchSnapshotManifest:
        """
        Check format version, section checksums, counts and the aggregate checksum.

        Returns:
            The validated manifest.

        Raises:
            ArchiveFormatError: Describing every problem found.
        """
        scan = self._scan()
        problems = self._check(scan)
        if problems:
            raise ArchiveFormatError("; ".join(problems))

        assert scan.manifest is not None
        self._manifest = scan.manifest
        self._validated = True
        logger.debug(f"Archive {self.path} validated")
        return scan.manifest

    def verify(self, include_media: bool = False) -> list[str]:
        """
        Collect every integrity problem instead of raising on the first.

        Returns:
            List of problems; empty if the archive is sound.
        """
        try:
            scan = self._scan(hash_media=include_media)
        except ArchiveFormatError as e:
            return [str(e)]

        problems = self._check(scan)
        if include_media and scan.manifest is not None:
            problems.extend(self._check_media(scan.manifest, scan.media_checksums))
        return problems

    def verify_media(self) -> list[str]:
        """Hash every media member and compare against the manifest."""
        scan = self._scan(hash_media=True)
        if scan.manifest is None:
            raise ArchiveFormatError(scan.manifest_error or "Manifest file not found in archive")
        return self._check_media(scan.manifest, scan.media_checksums)

    def _require_validated(self) -> None:
        if not self._validated:
            self.validate()

    def iter_batches(self, entity: str, batch_size: int) -> Iterator[list[Any]]:
        """
        Yield the records of one section in batches.

        Raises:
            ArchiveFormatError: If a line is not a valid record.
        """
        self._require_validated()
        name = entity_member_name(entity)

        tar = self._open_stream()
        try:
            with tar:
                for member in tar:
                    if member.name != name:
                        continue
                    fileobj = tar.extractfile(member)
                    assert fileobj is not None

                    batch: list[Any] = []
                    for line_no, line in enumerate(fileobj, 1):
                        if not line.strip():
                            continue
                        batch.append(self._decode(entity, line, line_no))
                        if len(batch) >= batch_size:
                            yield batch
                            batch = []
                    if batch:
                        yield batch
                    return
        except ARCHIVE_READ_ERRORS as e:
            raise ArchiveFormatError(f"Archive is corrupt or truncated: {e}", member=name) from e

    def _decode(self, entity: str, line: bytes, line_no: int) -> Any:
        name = entity_member_name(entity)
        try:
            return record_from_dict(entity, json.loads(line))
        except (ValueError, TypeError) as e:
            raise ArchiveFormatError(
                f"Invalid record in {name} line {line_no}: {e}", member=name
            ) from e

    def iter_media(self) -> Iterator[MediaEntry]:
        """Yield each media member in archive order."""
        self._require_validated()

        tar = self._open_stream()
        try:
            with tar:
                for member in tar:
                    if not member.isfile() or not member.name.startswith(f"{MEDIA_DIR}/"):
                        continue
                    fileobj = tar.extractfile(member)
                    assert fileobj is not None
                    yield MediaEntry(path=member.name, size=member.size, fileobj=fileobj)
        except ARCHIVE_READ_ERRORS as e:
            raise ArchiveFormatError(f"Archive is corrupt or truncated: {e}") from e
