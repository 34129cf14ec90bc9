"""
Blob Storage Module
===================

Provides abstract and concrete implementations for storing raw
payloads outside the database. The raw store prefers blob storage and
falls back to inline database storage when a write fails.
"""

from __future__ import annotations

import gzip
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from uuid import uuid4

from listing_hub.core.errors import StorageError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStorage(ABC):
    """
    Abstract base class for raw payload blob storage.

    Implementations return an opaque reference string from put() that
    get() and delete() accept later.
    """

    @abstractmethod
    def put(self, source: str, external_id: str, content: bytes, content_hash: str) -> str:
        """
        Store a payload.

        Args:
            source: Source the payload came from
            external_id: Source-scoped item key
            content: Raw payload bytes
            content_hash: Pre-computed hash of the content

        Returns:
            Storage reference for the payload

        Raises:
            StorageError: If the payload could not be written
        """
        pass

    @abstractmethod
    def get(self, ref: str) -> bytes | None:
        """
        Retrieve a payload by reference.

        Args:
            ref: Reference returned by put()

        Returns:
            Raw payload bytes, or None if not found
        """
        pass

    @abstractmethod
    def delete(self, ref: str) -> bool:
        """
        Delete a payload.

        Args:
            ref: Reference returned by put()

        Returns:
            True if deleted, False if not found
        """
        pass


class LocalBlobStorage(BlobStorage):
    """
    Local filesystem blob storage.

    Directory structure:
        {base_path}/{source}/{hash[:2]}/{hash}.gz

    Files are content-addressed and gzip compressed, so storing the same
    payload twice writes one file.
    """

    SCHEME = "file"

    def __init__(self, base_path: str | Path) -> None:
        """
        Initialize local blob storage.

        Args:
            base_path: Base directory for storing payloads
        """
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_blob_path(self, source: str, content_hash: str) -> Path:
        """Structure: {base}/{source}/{hash[:2]}/{hash}.gz"""
        safe_source = _UNSAFE_CHARS.sub("_", source).strip(".") or "unknown"
        return self.base_path / safe_source / content_hash[:2] / f"{content_hash}.gz"

    def _resolve_ref(self, ref: str) -> Path:
        prefix = f"{self.SCHEME}://"
        if not ref.startswith(prefix):
            raise StorageError(f"Unsupported blob reference: {ref}")
        path = (self.base_path / ref[len(prefix) :]).resolve()
        if self.base_path not in path.parents:
            raise StorageError(f"Blob reference escapes storage root: {ref}")
        return path

    def put(self, source: str, external_id: str, content: bytes, content_hash: str) -> str:
        """Save a payload to the local filesystem."""
        file_path = self._get_blob_path(source, content_hash)
        ref = f"{self.SCHEME}://{file_path.relative_to(self.base_path).as_posix()}"
        if file_path.exists():
            return ref

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            compressed = gzip.compress(content, compresslevel=6)
            # Concurrent writers of the same blob each get their own temp file
            tmp_path = file_path.with_name(f"{file_path.name}.{uuid4().hex}.tmp")
            try:
                with open(tmp_path, "wb") as f:
                    f.write(compressed)
                tmp_path.replace(file_path)
            finally:
                tmp_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to write blob for {source}/{external_id}: {e}", transient=True, cause=e
            ) from e

        return ref

    def get(self, ref: str) -> bytes | None:
        """Retrieve a payload by reference."""
        file_path = self._resolve_ref(ref)
        if not file_path.exists():
            return None

        with open(file_path, "rb") as f:
            compressed = f.read()
        return gzip.decompress(compressed)

    def delete(self, ref: str) -> bool:
        """Delete a payload."""
        file_path = self._resolve_ref(ref)
        if not file_path.exists():
            return False
        file_path.unlink()
        return True

    def get_storage_stats(self) -> dict:
        """Get storage statistics."""
        count = 0
        total_compressed = 0
        for path in self.base_path.rglob("*.gz"):
            count += 1
            total_compressed += path.stat().st_size
        return {
            "total_blobs": count,
            "total_compressed_bytes": total_compressed,
        }


def get_default_blob_storage(base_path: str | Path | None = None) -> LocalBlobStorage:
    """
    Get the default blob storage instance.

    Uses the given path, the BLOB_STORAGE_PATH environment variable, or
    ~/.listing_hub/blobs.
    """
    storage_path = base_path or os.environ.get("BLOB_STORAGE_PATH", "~/.listing_hub/blobs")
    return LocalBlobStorage(storage_path)
