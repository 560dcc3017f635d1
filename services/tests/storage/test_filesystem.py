"""
Tests for the filesystem blob store.
"""

from __future__ import annotations

import asyncio
import hashlib

import pytest

from vregistry.storage.filesystem import FilesystemStore
from vregistry.storage.keys import new_cache_entry_key
from vregistry.storage.protocol import BlobNotFoundError, BlobStoreError

UPSTREAM_ID = "0190a1b2-0000-7000-8000-000000000000"


class TestPutGet:
    async def test_put_and_get(self, fs_store: FilesystemStore) -> None:
        data = b"<project/>"
        info = await fs_store.put("test/lib-1.0.pom", data, content_type="application/xml")

        assert info.key == "test/lib-1.0.pom"
        assert info.size == len(data)
        assert info.sha256 == hashlib.sha256(data).hexdigest()
        assert await fs_store.get("test/lib-1.0.pom") == data

    async def test_put_replaces_existing(self, fs_store: FilesystemStore) -> None:
        await fs_store.put("replace.bin", b"old")
        await fs_store.put("replace.bin", b"new")
        assert await fs_store.get("replace.bin") == b"new"

    async def test_put_leaves_no_temp_files(self, fs_store: FilesystemStore) -> None:
        await fs_store.put("dir/blob.bin", b"data")
        names = sorted(p.name for p in (fs_store.root_dir / "dir").iterdir())
        assert names == ["blob.bin", "blob.bin.json"]

    async def test_concurrent_puts_same_key(self, fs_store: FilesystemStore) -> None:
        await asyncio.gather(
            fs_store.put("race.bin", b"a" * 1024),
            fs_store.put("race.bin", b"b" * 1024),
        )
        assert await fs_store.get("race.bin") in (b"a" * 1024, b"b" * 1024)

    async def test_get_missing(self, fs_store: FilesystemStore) -> None:
        with pytest.raises(BlobNotFoundError) as exc_info:
            await fs_store.get("nonexistent/key")
        assert exc_info.value.key == "nonexistent/key"

    async def test_cache_entry_key(self, fs_store: FilesystemStore) -> None:
        key = new_cache_entry_key("maven", 42, UPSTREAM_ID)
        await fs_store.put(key, b"jar bytes")
        assert await fs_store.get(key) == b"jar bytes"


class TestStat:
    async def test_stat_reads_sidecar(self, fs_store: FilesystemStore) -> None:
        await fs_store.put("blob.tgz", b"\x1f\x8b", content_type="application/gzip")

        info = await fs_store.stat("blob.tgz")

        assert info.size == 2
        assert info.content_type == "application/gzip"
        assert info.sha256 == hashlib.sha256(b"\x1f\x8b").hexdigest()

    async def test_stat_without_sidecar(self, fs_store: FilesystemStore) -> None:
        await fs_store.put("orphan.bin", b"abc")
        (fs_store.root_dir / "orphan.bin.json").unlink()

        info = await fs_store.stat("orphan.bin")

        assert info.size == 3
        assert info.content_type == "application/octet-stream"

    async def test_stat_missing(self, fs_store: FilesystemStore) -> None:
        with pytest.raises(BlobNotFoundError):
            await fs_store.stat("nonexistent")


class TestDelete:
    async def test_delete_removes_blob_and_sidecar(self, fs_store: FilesystemStore) -> None:
        await fs_store.put("dir/to-delete.bin", b"data")

        await fs_store.delete("dir/to-delete.bin")

        assert not await fs_store.exists("dir/to-delete.bin")
        assert list((fs_store.root_dir / "dir").iterdir()) == []

    async def test_delete_missing_is_idempotent(self, fs_store: FilesystemStore) -> None:
        await fs_store.delete("never-existed.bin")


class TestKeyValidation:
    @pytest.mark.parametrize("key", ["../escape.txt", "/etc/passwd", "", "a/b.bin.json"])
    async def test_rejected_keys(self, fs_store: FilesystemStore, key: str) -> None:
        with pytest.raises(BlobStoreError):
            await fs_store.put(key, b"nope")
