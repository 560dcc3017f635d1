"""
Blob store protocol for cached upstream files.

Cache entries point at their blob through the object_storage_key frozen on
the row. A store only needs whole-object put/get/delete: blobs are written
once per fetch and removed by the reclaimer, never appended to or listed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class BlobInfo:
    """What a store knows about a blob without reading it."""

    key: str
    size: int
    content_type: str
    sha256: str
    stored_at: datetime


class BlobStoreError(Exception):
    """Base exception for blob store operations."""


class BlobNotFoundError(BlobStoreError):
    """The key has no blob, e.g. it was reclaimed or never written."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Blob not found: {key}")


@runtime_checkable
class BlobStore(Protocol):
    """Structural interface every storage backend satisfies."""

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> BlobInfo:
        """Write a blob, replacing whatever the key held before."""
        ...

    async def get(self, key: str) -> bytes:
        """Read a blob. Raises BlobNotFoundError if absent."""
        ...

    async def stat(self, key: str) -> BlobInfo:
        """Describe a blob without reading its content. Raises BlobNotFoundError if absent."""
        ...

    async def delete(self, key: str) -> None:
        """Remove a blob. Deleting a missing key is not an error."""
        ...

    async def exists(self, key: str) -> bool: ...

    async def close(self) -> None: ...
