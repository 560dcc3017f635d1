"""Tests for fetch-on-miss."""

import hashlib
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import Select, Update
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.config import settings
from vregistry.db.models import CacheEntryStatus, generate_uuid7
from vregistry.services.download_counter import flush_downloads_count
from vregistry.services.fetch_service import (
    FETCH_JOB,
    enqueue_fetch,
    fetch_and_cache,
    fetch_cache_entry,
    resolve_checksums,
)
from vregistry.storage.filesystem import FilesystemStore

BODY = b"PK\x03\x04 fake jar contents"
BODY_SHA1 = hashlib.sha1(BODY).hexdigest()
BODY_MD5 = hashlib.md5(BODY).hexdigest()
PATH = "com/acme/lib/1.0/lib-1.0.jar"

UPSERT = "vregistry.services.fetch_service.cache_entry_service.upsert_cache_entry"
HTTP_CLIENT = "vregistry.services.upstream_service.upstream_http_client"


class TestResolveChecksums:
    def test_computed_when_headers_missing(self):
        assert resolve_checksums(BODY, httpx.Headers()) == (BODY_SHA1, BODY_MD5)

    def test_provider_headers_preferred(self):
        headers = httpx.Headers({"X-Checksum-Sha1": "a" * 40, "X-Checksum-Md5": "b" * 32})
        assert resolve_checksums(BODY, headers) == ("a" * 40, "b" * 32)

    def test_uppercase_header_values_lowercased(self):
        headers = httpx.Headers({"X-Goog-Meta-Sha1": "ABCDEF" + "0" * 34})
        sha1, _ = resolve_checksums(BODY, headers)
        assert sha1 == "abcdef" + "0" * 34

    def test_malformed_header_ignored(self):
        headers = httpx.Headers({"X-Checksum-Sha1": "not-a-sha1", "X-Checksum-Md5": "1234"})
        assert resolve_checksums(BODY, headers) == (BODY_SHA1, BODY_MD5)

    def test_restricted_mode_has_no_md5(self, monkeypatch):
        monkeypatch.setattr(settings.virtual_registries, "restricted_crypto", True)
        headers = httpx.Headers({"X-Checksum-Md5": "b" * 32})
        assert resolve_checksums(BODY, headers) == (BODY_SHA1, None)


class TestFetchAndCache:
    async def test_caches_successful_response(self, mock_db, make_upstream, mock_http):
        upstream = make_upstream()
        storage = AsyncMock()

        def handler(request):
            assert str(request.url) == f"https://repo.example.com/maven2/{PATH}"
            return httpx.Response(
                200,
                content=BODY,
                headers={"Content-Type": "application/java-archive", "ETag": '"abc"'},
            )

        with patch(HTTP_CLIENT, mock_http(handler)), patch(UPSERT, new_callable=AsyncMock) as upsert:
            entry = await fetch_and_cache(mock_db, storage, upstream, 42, PATH)

        assert entry is upsert.return_value
        args = upsert.await_args.args
        assert args[:5] == (mock_db, storage, upstream, 42, PATH)
        updates = args[5]
        assert updates["file"] == BODY
        assert updates["file_sha1"] == BODY_SHA1
        assert updates["file_md5"] == BODY_MD5
        assert updates["size"] == len(BODY)
        assert updates["content_type"] == "application/java-archive"
        assert updates["upstream_etag"] == '"abc"'
        assert updates["upstream_checked_at"] is not None
        assert "digest" not in updates

    @pytest.mark.parametrize("status", [404, 401, 500])
    async def test_error_status_writes_nothing(
        self, mock_db, make_upstream, mock_http, status
    ):
        with (
            patch(HTTP_CLIENT, mock_http(lambda r: httpx.Response(status))),
            patch(UPSERT, new_callable=AsyncMock) as upsert,
        ):
            assert await fetch_and_cache(mock_db, AsyncMock(), make_upstream(), 42, PATH) is None
        upsert.assert_not_called()

    async def test_transport_error_writes_nothing(self, mock_db, make_upstream, mock_http):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with patch(HTTP_CLIENT, mock_http(handler)), patch(UPSERT, new_callable=AsyncMock) as upsert:
            assert await fetch_and_cache(mock_db, AsyncMock(), make_upstream(), 42, PATH) is None
        upsert.assert_not_called()

    async def test_blocked_redirect_writes_nothing(self, mock_db, make_upstream, mock_http):
        def handler(request):
            return httpx.Response(302, headers={"Location": "http://127.0.0.1:9000/" + PATH})

        with patch(HTTP_CLIENT, mock_http(handler)), patch(UPSERT, new_callable=AsyncMock) as upsert:
            assert await fetch_and_cache(mock_db, AsyncMock(), make_upstream(), 42, PATH) is None
        upsert.assert_not_called()

    async def test_sends_upstream_credentials(
        self, mock_db, make_upstream, mock_http, encryption
    ):
        from vregistry.services.encryption_service import encrypt_credential

        upstream = make_upstream(
            username_encrypted=encrypt_credential("deploy"),
            password_encrypted=encrypt_credential("s3cret"),
        )
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, content=BODY)

        with patch(HTTP_CLIENT, mock_http(handler)), patch(UPSERT, new_callable=AsyncMock):
            await fetch_and_cache(mock_db, AsyncMock(), upstream, 42, PATH)

        assert seen["auth"].startswith("Basic ")

    async def test_container_digest_from_header(self, mock_db, make_upstream, mock_http):
        upstream = make_upstream(package_type="container", url="https://registry.example.com")
        digest = "sha256:" + "c" * 64

        def handler(request):
            return httpx.Response(
                200,
                content=b"{}",
                headers={
                    "Docker-Content-Digest": digest,
                    "Content-Type": "application/vnd.oci.image.manifest.v1+json",
                },
            )

        with patch(HTTP_CLIENT, mock_http(handler)), patch(UPSERT, new_callable=AsyncMock) as upsert:
            await fetch_and_cache(
                mock_db, AsyncMock(), upstream, 42, "v2/library/alpine/manifests/3.19"
            )

        assert upsert.await_args.args[5]["digest"] == digest

    async def test_container_digest_computed(self, mock_db, make_upstream, mock_http):
        upstream = make_upstream(package_type="container", url="https://registry.example.com")

        with (
            patch(HTTP_CLIENT, mock_http(lambda r: httpx.Response(200, content=b"layer"))),
            patch(UPSERT, new_callable=AsyncMock) as upsert,
        ):
            await fetch_and_cache(mock_db, AsyncMock(), upstream, 42, "v2/library/alpine/blobs/x")

        expected = "sha256:" + hashlib.sha256(b"layer").hexdigest()
        assert upsert.await_args.args[5]["digest"] == expected


class TestEnqueueFetch:
    @patch("vregistry.services.fetch_service.queue.enqueue", new_callable=AsyncMock)
    async def test_dedup_key_per_upstream_and_path(self, mock_enqueue, make_upstream):
        upstream = make_upstream()

        await enqueue_fetch(upstream, 42, PATH)

        mock_enqueue.assert_awaited_once_with(
            FETCH_JOB,
            {
                "upstream_id": str(upstream.id),
                "group_id": 42,
                "package_type": "maven",
                "relative_path": PATH,
            },
            dedup_key=f"fetch:maven:{upstream.id}:{PATH}",
        )


class TestFetchCacheEntryJob:
    @patch("vregistry.services.fetch_service.get_storage")
    @patch(
        "vregistry.services.fetch_service.download_counter.bump_downloads_count",
        new_callable=AsyncMock,
    )
    @patch("vregistry.services.fetch_service.fetch_and_cache", new_callable=AsyncMock)
    async def test_counts_triggering_download_once(
        self, mock_fetch, mock_bump, mock_storage, mock_db, make_upstream, session_factory
    ):
        upstream = make_upstream()
        entry = MagicMock()
        mock_db.get.return_value = upstream
        mock_fetch.return_value = entry

        with patch("vregistry.services.fetch_service.get_db_session", session_factory(mock_db)):
            await fetch_cache_entry(str(upstream.id), 42, "maven", PATH)

        mock_fetch.assert_awaited_once_with(
            mock_db, mock_storage.return_value, upstream, 42, PATH
        )
        mock_bump.assert_awaited_once_with(entry)

    @patch(
        "vregistry.services.fetch_service.download_counter.bump_downloads_count",
        new_callable=AsyncMock,
    )
    @patch("vregistry.services.fetch_service.fetch_and_cache", new_callable=AsyncMock)
    async def test_failed_fetch_counts_nothing(
        self, mock_fetch, mock_bump, mock_db, make_upstream, session_factory
    ):
        upstream = make_upstream()
        mock_db.get.return_value = upstream
        mock_fetch.return_value = None

        with (
            patch("vregistry.services.fetch_service.get_db_session", session_factory(mock_db)),
            patch("vregistry.services.fetch_service.get_storage"),
        ):
            await fetch_cache_entry(str(upstream.id), 42, "maven", PATH)

        mock_bump.assert_not_called()

    @patch("vregistry.services.fetch_service.fetch_and_cache", new_callable=AsyncMock)
    async def test_deleted_upstream_skipped(
        self, mock_fetch, mock_db, make_upstream, session_factory
    ):
        mock_db.get.return_value = None

        with patch("vregistry.services.fetch_service.get_db_session", session_factory(mock_db)):
            await fetch_cache_entry(str(make_upstream().id), 42, "maven", PATH)

        mock_fetch.assert_not_called()


class _CounterRedis:
    """Dict-backed stand-in for the commands the download counter sends."""

    def __init__(self):
        self.data: dict[str, str] = {}

    def pipeline(self, transaction=True):
        return _CounterPipeline(self.data)


class _CounterPipeline:
    def __init__(self, data):
        self._data = data
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def incrby(self, key, amount):
        self._ops.append(("incrby", key, amount))

    def set(self, key, value, nx=False):
        self._ops.append(("set", key, value, nx))

    def getdel(self, key):
        self._ops.append(("getdel", key))

    async def execute(self):
        results = []
        for op, key, *args in self._ops:
            if op == "incrby":
                self._data[key] = str(int(self._data.get(key, 0)) + args[0])
                results.append(int(self._data[key]))
            elif op == "set":
                value, nx = args
                if not (nx and key in self._data):
                    self._data[key] = value
                results.append(True)
            else:
                results.append(self._data.pop(key, None))
        self._ops = []
        return results


class TestConcurrentFetchScenario:
    """Two fetch jobs for one path from one upstream, then the counter flush."""

    POM = "com/acme/lib-1.0.pom"
    POM_BODY = b"<project><artifactId>lib</artifactId></project>"

    @pytest.fixture
    def rows(self):
        return []

    @pytest.fixture
    def open_session(self, rows, make_result, make_integrity_error):
        """Sessions over one shared maven cache table.

        `stale_reads` lookups return nothing, as when the read ran before the
        other job's insert committed.
        """

        def live(upstream_id, relative_path):
            return next(
                (
                    r
                    for r in rows
                    if r.upstream_id == upstream_id
                    and r.relative_path == relative_path
                    and r.status == CacheEntryStatus.DEFAULT
                ),
                None,
            )

        def _open(upstream=None, stale_reads=0):
            db = AsyncMock(spec=AsyncSession)
            db.get.return_value = upstream
            pending = []
            reads = 0

            async def execute(stmt):
                nonlocal reads
                params = stmt.compile().params
                if isinstance(stmt, Select):
                    reads += 1
                    if reads <= stale_reads:
                        return make_result(scalar=None)
                    return make_result(
                        scalar=live(params["upstream_id_1"], params["relative_path_1"])
                    )
                assert isinstance(stmt, Update)
                row = next(r for r in rows if r.id == params["id_1"])
                row.downloads_count = row.downloads_count + params["downloads_count_1"]
                row.downloaded_at = params["downloaded_at"]
                return make_result(rowcount=1)

            async def flush():
                batch = list(pending)
                pending.clear()
                for entry in batch:
                    if any(r is entry for r in rows):
                        continue
                    if live(entry.upstream_id, entry.relative_path) is not None:
                        raise make_integrity_error()
                    entry.id = generate_uuid7()
                    rows.append(entry)

            db.execute.side_effect = execute
            db.add.side_effect = pending.append
            db.flush.side_effect = flush
            return db

        return _open

    async def test_single_row_counts_both_downloads(
        self, rows, open_session, make_upstream, mock_http, tmp_path
    ):
        upstream = make_upstream()
        store = FilesystemStore(root_dir=str(tmp_path))
        redis = _CounterRedis()
        # The second job looked the path up before the first job's insert landed
        sessions = iter([open_session(upstream), open_session(upstream, stale_reads=1)])

        @asynccontextmanager
        async def fetch_session():
            yield next(sessions)

        @asynccontextmanager
        async def flush_session():
            yield open_session()

        def handler(request):
            return httpx.Response(
                200, content=self.POM_BODY, headers={"Content-Type": "application/xml"}
            )

        with (
            patch(HTTP_CLIENT, mock_http(handler)),
            patch("vregistry.services.fetch_service.get_db_session", fetch_session),
            patch("vregistry.services.fetch_service.get_storage", return_value=store),
            patch("vregistry.services.download_counter.get_redis_client", return_value=redis),
            patch(
                "vregistry.services.download_counter.queue.enqueue", new_callable=AsyncMock
            ) as mock_enqueue,
            patch("vregistry.services.download_counter.get_db_session", flush_session),
        ):
            await fetch_cache_entry(str(upstream.id), 42, "maven", self.POM)
            await fetch_cache_entry(str(upstream.id), 42, "maven", self.POM)

            assert len(rows) == 1
            entry = rows[0]
            assert entry.downloads_count == 0

            flushed = await flush_downloads_count("maven", str(entry.id))

        assert flushed == 2
        assert len(rows) == 1
        assert entry.relative_path == self.POM
        assert entry.downloads_count == 2
        assert entry.downloaded_at is not None
        assert redis.data == {}
        # Both bumps share one pending flush
        dedup_keys = {c.kwargs["dedup_key"] for c in mock_enqueue.await_args_list}
        assert mock_enqueue.await_count == 2
        assert dedup_keys == {f"downloads:maven:{entry.id}"}
        assert await store.get(entry.object_storage_key) == self.POM_BODY
