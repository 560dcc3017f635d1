"""
Filesystem blob store.

Blobs live under root_dir at their key path, with a JSON sidecar
(<key>.json) holding the content type, size and sha256 recorded at write
time. Both files are written to a temporary sibling and renamed into place,
so concurrent fetches of the same key never expose a partial blob.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from vregistry.logging_config import get_logger
from vregistry.storage.protocol import BlobInfo, BlobNotFoundError, BlobStoreError

logger = get_logger(__name__)

SIDECAR_SUFFIX = ".json"


class FilesystemStore:
    """Blob store rooted at a local directory."""

    def __init__(self, root_dir: str) -> None:
        self._root = Path(root_dir)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root_dir(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        """Map a key under the root, refusing anything that escapes it."""
        rel = Path(key)
        if not key or rel.is_absolute() or ".." in rel.parts or key.endswith(SIDECAR_SUFFIX):
            raise BlobStoreError(f"Invalid key: {key}")
        return self._root / rel

    @staticmethod
    def _sidecar(path: Path) -> Path:
        return path.with_name(path.name + SIDECAR_SUFFIX)

    async def _replace(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(f".{path.name}.{secrets.token_hex(8)}.tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(tmp, path)

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> BlobInfo:
        path = self._path(key)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)

        info = BlobInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            sha256=hashlib.sha256(data).hexdigest(),
            stored_at=datetime.now(UTC),
        )
        sidecar = {
            "content_type": info.content_type,
            "size": info.size,
            "sha256": info.sha256,
            "stored_at": info.stored_at.isoformat(),
        }
        # Blob first: a sidecar never describes content that is not there yet
        await self._replace(path, data)
        await self._replace(self._sidecar(path), json.dumps(sidecar).encode())
        logger.debug("Blob stored", key=key, size=info.size)
        return info

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise BlobNotFoundError(key) from None

    async def stat(self, key: str) -> BlobInfo:
        path = self._path(key)
        if not await aiofiles.os.path.exists(path):
            raise BlobNotFoundError(key)

        try:
            async with aiofiles.open(self._sidecar(path)) as f:
                meta = json.loads(await f.read())
        except FileNotFoundError:
            # Blob written by a put that died before its sidecar
            st = await aiofiles.os.stat(path)
            return BlobInfo(
                key=key,
                size=st.st_size,
                content_type="application/octet-stream",
                sha256="",
                stored_at=datetime.fromtimestamp(st.st_mtime, tz=UTC),
            )

        return BlobInfo(
            key=key,
            size=meta["size"],
            content_type=meta["content_type"],
            sha256=meta["sha256"],
            stored_at=datetime.fromisoformat(meta["stored_at"]),
        )

    async def delete(self, key: str) -> None:
        path = self._path(key)
        for target in (path, self._sidecar(path)):
            with suppress(FileNotFoundError):
                await aiofiles.os.remove(target)

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.exists(self._path(key))

    async def close(self) -> None:
        """Nothing to release."""
