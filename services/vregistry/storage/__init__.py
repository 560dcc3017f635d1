"""
Blob storage for cached upstream files.

init_storage() / close_storage() bracket the worker's lifetime; job handlers
reach the configured backend through get_storage().
"""

from __future__ import annotations

from vregistry.config import StorageBackend, settings
from vregistry.logging_config import get_logger
from vregistry.storage.protocol import BlobStore

logger = get_logger(__name__)

_store: BlobStore | None = None


async def init_storage() -> None:
    """Build the backend selected by settings.storage.backend."""
    global _store  # noqa: PLW0603
    cfg = settings.storage

    if cfg.backend == StorageBackend.FILESYSTEM:
        from vregistry.storage.filesystem import FilesystemStore

        _store = FilesystemStore(root_dir=cfg.filesystem.root_dir)
        logger.info("Storage initialized", backend=cfg.backend, root_dir=cfg.filesystem.root_dir)
        return

    raise ValueError(f"Unsupported storage backend: {cfg.backend}")


async def close_storage() -> None:
    global _store  # noqa: PLW0603
    if _store is None:
        return
    await _store.close()
    _store = None
    logger.info("Storage closed")


def get_storage() -> BlobStore:
    """Return the active backend. Raises RuntimeError before init_storage()."""
    if _store is None:
        raise RuntimeError("Storage not initialized; call init_storage() first")
    return _store
