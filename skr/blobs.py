"""
Content-addressed blob storage.

Blobs live at ``<root>/blobs/<algorithm>/<hex>`` as in the OCI image layout.
Writes go to a temporary file next to the destination and are renamed into
place, so concurrent writers of the same digest never corrupt each other.
"""

import hashlib
import logging
import os
import tempfile

from .errors import NotFoundError, StoreIOError, check_cancelled
from .validation import is_digest, validate_digest

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _chunks(data):
    """Yield byte chunks from bytes, a file object or an iterable of bytes."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        yield bytes(data)
    elif hasattr(data, "read"):
        while True:
            chunk = data.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    else:
        yield from data


class BlobStore:
    """Digest-addressed blob directory."""

    def __init__(self, root: str):
        self.root = root
        self.blobs_dir = os.path.join(root, "blobs")

    def path(self, digest: str) -> str:
        validate_digest(digest)
        algorithm, hex_digest = digest.split(":", 1)
        return os.path.join(self.blobs_dir, algorithm, hex_digest)

    def exists(self, digest: str) -> bool:
        return os.path.isfile(self.path(digest))

    def size(self, digest: str) -> int:
        try:
            return os.path.getsize(self.path(digest))
        except FileNotFoundError as exc:
            raise NotFoundError(f"blob {digest} not found", code="BLOB_UNKNOWN") from exc

    def put(self, digest: str, data, cancel=None) -> bool:
        """
        Store a blob under ``digest`` unless it is already present.

        Args:
            digest: Expected digest of the content
            data: bytes, a binary file object or an iterable of byte chunks
            cancel: Optional threading.Event checked between chunks

        Returns:
            True if the blob was written, False if it already existed

        Raises:
            StoreIOError: write failure or content not matching ``digest``
        """
        final_path = self.path(digest)
        if os.path.isfile(final_path):
            logger.debug(f"Blob already present: {digest}")
            return False

        directory = os.path.dirname(final_path)
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        except OSError as exc:
            raise StoreIOError(f"failed to create blob directory {directory}: {exc}") from exc

        hasher = hashlib.new(digest.split(":", 1)[0])
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in _chunks(data):
                    check_cancelled(cancel)
                    hasher.update(chunk)
                    f.write(chunk)
            actual = f"{hasher.name}:{hasher.hexdigest()}"
            if actual != digest:
                raise StoreIOError(f"digest mismatch: expected {digest}, got {actual}")
            os.replace(tmp_path, final_path)
        except OSError as exc:
            raise StoreIOError(f"failed to write blob {digest}: {exc}") from exc
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

        logger.debug(f"Blob written: {digest}")
        return True

    def open(self, digest: str):
        try:
            return open(self.path(digest), "rb")
        except FileNotFoundError as exc:
            raise NotFoundError(f"blob {digest} not found", code="BLOB_UNKNOWN") from exc
        except OSError as exc:
            raise StoreIOError(f"failed to open blob {digest}: {exc}") from exc

    def read(self, digest: str) -> bytes:
        with self.open(digest) as f:
            return f.read()

    def iter_chunks(self, digest: str, chunk_size: int = CHUNK_SIZE, cancel=None):
        """Stream a blob in chunks. The blob is opened before the first yield."""
        f = self.open(digest)

        def generate():
            with f:
                while True:
                    check_cancelled(cancel)
                    chunk = f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

        return generate()

    def delete(self, digest: str) -> None:
        try:
            os.remove(self.path(digest))
        except OSError as exc:
            raise StoreIOError(f"failed to remove blob {digest}: {exc}") from exc

    def walk(self):
        """
        Yield ``(digest, size)`` for every physical blob.

        A missing blob area yields nothing. Temporary files left by
        interrupted writes are skipped.
        """
        if not os.path.isdir(self.blobs_dir):
            return
        for algorithm in sorted(os.listdir(self.blobs_dir)):
            algo_dir = os.path.join(self.blobs_dir, algorithm)
            if not os.path.isdir(algo_dir):
                continue
            for entry in sorted(os.scandir(algo_dir), key=lambda e: e.name):
                if not entry.is_file() or entry.name.startswith(".tmp-"):
                    continue
                digest = f"{algorithm}:{entry.name}"
                if not is_digest(digest):
                    logger.warning(f"Ignoring unexpected file in blob area: {entry.path}")
                    continue
                yield digest, entry.stat().st_size
