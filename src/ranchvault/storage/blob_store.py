"""
Blob storage for animal photos.

Photos live outside the record store, addressed by a path of the form
<ranch_id>/<animal_id>/<filename>. Objects can approach a gigabyte, so
every operation here streams: get() yields chunks and put() reads from a
file object. Nothing buffers a whole object in memory.

Two implementations are provided:
    - LocalBlobStore: a directory tree on disk, written atomically
    - HttpBlobStore: a Supabase-storage style REST API over requests

Error Classification:
    - BlobNotFoundError is permanent; retrying will not help
    - BlobTransferError is transient (network, 5xx, rate limiting)
    - Other BlobStoreError subclasses are permanent
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Protocol
from urllib.parse import quote

import requests

from ranchvault.storage.record_store import StorageError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class BlobStoreError(StorageError):
    """Base exception for blob store failures."""

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class BlobNotFoundError(BlobStoreError):
    """Raised when no object exists at a path."""

    pass


class BlobTransferError(BlobStoreError):
    """Raised for transfer failures that may succeed on retry."""

    pass


class BlobStore(Protocol):
    """Streaming object storage keyed by ranch/animal/filename paths."""

    def get(self, path: str) -> Iterator[bytes]: ...

    def put(
        self,
        path: str,
        fileobj: BinaryIO,
        size: int | None = None,
        content_type: str = "application/octet-stream",
    ) -> None: ...

    def delete(self, path: str) -> None: ...

    def exists(self, path: str) -> bool: ...


def normalize_blob_path(path: str) -> str:
    """
    Validate a blob path and return it in canonical form.

    Raises:
        BlobStoreError: If the path is empty, absolute, or escapes the root.
    """
    if not path or path.startswith("/") or "\\" in path:
        raise BlobStoreError(f"Invalid blob path: {path!r}", path=path)

    parts = PurePosixPath(path).parts
    if not parts or any(part in ("..", ".") for part in parts):
        raise BlobStoreError(f"Invalid blob path: {path!r}", path=path)

    return "/".join(parts)


class LocalBlobStore:
    """
    Blob store backed by a local directory.

    Example:
        store = LocalBlobStore("/var/lib/ranchvault/blobs")
        with open("calf.jpg", "rb") as f:
            store.put("ranch-1/animal-7/calf.jpg", f)
        for chunk in store.get("ranch-1/animal-7/calf.jpg"):
            ...
    """

    def __init__(self, root: Path | str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.root = Path(root).expanduser()
        self.chunk_size = chunk_size
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        return self.root / normalize_blob_path(path)

    def get(self, path: str) -> Iterator[bytes]:
        """
        Open an object for streaming.

        The existence check happens here, so a missing object fails at call
        time rather than on first iteration.

        Raises:
            BlobNotFoundError: If nothing is stored at path.
            BlobTransferError: If the file cannot be opened.
        """
        target = self._resolve(path)
        if not target.is_file():
            raise BlobNotFoundError(f"Blob not found: {path}", path=path)

        try:
            handle = open(target, "rb")
        except OSError as e:
            raise BlobTransferError(f"Cannot open blob {path}: {e}", path=path) from e

        return self._read_chunks(handle, path)

    def _read_chunks(self, handle: BinaryIO, path: str) -> Iterator[bytes]:
        try:
            while True:
                try:
                    chunk = handle.read(self.chunk_size)
                except OSError as e:
                    raise BlobTransferError(f"Error reading blob {path}: {e}", path=path) from e
                if not chunk:
                    return
                yield chunk
        finally:
            handle.close()

    def put(
        self,
        path: str,
        fileobj: BinaryIO,
        size: int | None = None,
        content_type: str = "application/octet-stream",
    ) -> None:
        """
        Store an object, replacing any existing one.

        Writes go to a temp file in the target directory and are renamed
        into place, so readers never see a partial object.
        """
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(fileobj, out, self.chunk_size)
            os.replace(temp_name, target)
        except OSError as e:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise BlobTransferError(f"Error writing blob {path}: {e}", path=path) from e
        except Exception:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

        logger.debug(f"Stored blob {path}")

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError as e:
            raise BlobNotFoundError(f"Blob not found: {path}", path=path) from e
        except OSError as e:
            raise BlobTransferError(f"Error deleting blob {path}: {e}", path=path) from e

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()


class HttpBlobStore:
    """
    Blob store client for a Supabase-storage style REST API.

    Objects are addressed as {url}/storage/v1/object/{bucket}/{path} and
    requests carry the service key both as a bearer token and as the
    apikey header.

    Example:
        store = HttpBlobStore(
            url="https://project.supabase.co",
            bucket="animal-photos",
            service_key=key,
        )
    """

    # Status codes worth retrying
    TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

    def __init__(
        self,
        url: str,
        bucket: str,
        service_key: str,
        timeout: float = 60.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.bucket = bucket
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {service_key}",
                "apikey": service_key,
            }
        )

    def _object_url(self, path: str) -> str:
        path = normalize_blob_path(path)
        return f"{self.url}/storage/v1/object/{quote(self.bucket)}/{quote(path)}"

    def _raise_for_status(self, response: requests.Response, path: str) -> None:
        status = response.status_code
        if status < 400:
            return

        # The storage API answers 400 with a "not_found" body for missing objects
        if status == 404 or (status == 400 and "not_found" in response.text.lower()):
            raise BlobNotFoundError(f"Blob not found: {path}", path=path)
        if status in self.TRANSIENT_STATUS_CODES:
            raise BlobTransferError(
                f"Blob store returned {status} for {path}", path=path
            )
        raise BlobStoreError(
            f"Blob store returned {status} for {path}: {response.text[:200]}",
            path=path,
        )

    def get(self, path: str) -> Iterator[bytes]:
        """
        Start a streaming download.

        Raises:
            BlobNotFoundError: If the object does not exist.
            BlobTransferError: On connection errors or retryable statuses.
        """
        try:
            response = self.session.get(
                self._object_url(path), stream=True, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise BlobTransferError(f"Error fetching blob {path}: {e}", path=path) from e

        try:
            self._raise_for_status(response, path)
        except BlobStoreError:
            response.close()
            raise

        return self._iter_response(response, path)

    def _iter_response(self, response: requests.Response, path: str) -> Iterator[bytes]:
        try:
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise BlobTransferError(f"Download of {path} interrupted: {e}", path=path) from e
        finally:
            response.close()

    def put(
        self,
        path: str,
        fileobj: BinaryIO,
        size: int | None = None,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Upload an object, streaming the request body from fileobj."""
        headers = {"Content-Type": content_type, "x-upsert": "true"}
        if size is not None:
            headers["Content-Length"] = str(size)

        try:
            response = self.session.post(
                self._object_url(path),
                data=fileobj,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise BlobTransferError(f"Error uploading blob {path}: {e}", path=path) from e

        self._raise_for_status(response, path)
        logger.debug(f"Uploaded blob {path}")

    def delete(self, path: str) -> None:
        try:
            response = self.session.delete(self._object_url(path), timeout=self.timeout)
        except requests.RequestException as e:
            raise BlobTransferError(f"Error deleting blob {path}: {e}", path=path) from e
        self._raise_for_status(response, path)

    def exists(self, path: str) -> bool:
        try:
            response = self.session.head(self._object_url(path), timeout=self.timeout)
        except requests.RequestException as e:
            raise BlobTransferError(f"Error checking blob {path}: {e}", path=path) from e

        if response.status_code in (400, 404):
            return False
        self._raise_for_status(response, path)
        return True
