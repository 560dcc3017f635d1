"""Fetch-on-miss: download a file from an upstream and cache it.

A miss enqueues one fetch job per (package_type, upstream, path); duplicates
are dropped while that job is queued or running. The job GETs the file,
takes provider checksums from response headers when they are well-formed
(computing them otherwise), and upserts the cache entry. Upstream errors are
logged and the job ends without writing anything; it is not retried.
"""

import hashlib
import uuid

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.config import settings
from vregistry.db.models import CacheEntry, PackageType, Upstream, utc_now
from vregistry.db.session import get_db_session
from vregistry.jobs import queue
from vregistry.jobs.worker import job_handler
from vregistry.logging_config import get_logger, job_log_context
from vregistry.services import cache_entry_service, download_counter, upstream_service
from vregistry.services.cache_entry_service import MD5_PATTERN, SHA1_PATTERN
from vregistry.services.errors import ValidationError
from vregistry.services.url_validation import send_checked
from vregistry.storage import get_storage
from vregistry.storage.protocol import BlobStore

logger = get_logger(__name__)

FETCH_JOB = "virtual_registries.fetch_cache_entry"

SHA1_HEADERS = ("X-Checksum-Sha1", "X-Sha1-Checksum", "X-Amz-Meta-Sha1", "X-Goog-Meta-Sha1")
MD5_HEADERS = ("X-Checksum-Md5", "X-Md5-Checksum", "X-Amz-Meta-Md5", "X-Goog-Meta-Md5")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def checksum_from_headers(headers: httpx.Headers, names: tuple[str, ...], pattern) -> str | None:
    """First well-formed checksum among `names`, lowercased."""
    for name in names:
        value = headers.get(name)
        if not value:
            continue
        value = value.strip().lower()
        if pattern.match(value):
            return value
    return None


def resolve_checksums(body: bytes, headers: httpx.Headers) -> tuple[str, str | None]:
    """(sha1, md5) for a fetched file. md5 is None in restricted cryptography mode."""
    sha1 = checksum_from_headers(headers, SHA1_HEADERS, SHA1_PATTERN)
    if sha1 is None:
        sha1 = hashlib.sha1(body, usedforsecurity=False).hexdigest()

    if settings.virtual_registries.restricted_crypto:
        return sha1, None

    md5 = checksum_from_headers(headers, MD5_HEADERS, MD5_PATTERN)
    if md5 is None:
        md5 = hashlib.md5(body, usedforsecurity=False).hexdigest()
    return sha1, md5


async def enqueue_fetch(upstream: Upstream, group_id: int, relative_path: str) -> str | None:
    """Schedule a fetch of `relative_path` from `upstream`. None if one is already pending."""
    return await queue.enqueue(
        FETCH_JOB,
        {
            "upstream_id": str(upstream.id),
            "group_id": group_id,
            "package_type": upstream.package_type,
            "relative_path": relative_path,
        },
        dedup_key=f"fetch:{upstream.package_type}:{upstream.id}:{relative_path}",
    )


async def fetch_and_cache(
    db: AsyncSession,
    storage: BlobStore,
    upstream: Upstream,
    group_id: int,
    relative_path: str,
) -> CacheEntry | None:
    """GET the file and upsert its cache entry. None when the upstream failed."""
    url = upstream.url_for(relative_path)
    timeout = settings.virtual_registries.fetch_timeout_seconds
    try:
        async with upstream_service.upstream_http_client(timeout) as client:
            response = await send_checked(
                client, "GET", url, headers=upstream_service.auth_headers(upstream)
            )
    except (httpx.HTTPError, ValidationError) as e:
        logger.warning(
            "Upstream fetch failed",
            upstream_id=str(upstream.id),
            path=relative_path,
            error=str(e),
        )
        return None

    if not response.is_success:
        logger.warning(
            "Upstream returned an error status",
            upstream_id=str(upstream.id),
            path=relative_path,
            status=response.status_code,
        )
        return None

    body = response.content
    sha1, md5 = resolve_checksums(body, response.headers)
    updates = {
        "file": body,
        "file_sha1": sha1,
        "file_md5": md5,
        "size": len(body),
        "content_type": response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE,
        "upstream_etag": response.headers.get("ETag"),
        "upstream_checked_at": utc_now(),
    }
    if upstream.package_type == PackageType.CONTAINER:
        updates["digest"] = (
            response.headers.get("Docker-Content-Digest")
            or f"sha256:{hashlib.sha256(body).hexdigest()}"
        )

    entry = await cache_entry_service.upsert_cache_entry(
        db, storage, upstream, group_id, relative_path, updates
    )
    logger.info(
        "Cached upstream file",
        upstream_id=str(upstream.id),
        path=relative_path,
        size=len(body),
    )
    return entry


@job_handler(FETCH_JOB)
async def fetch_cache_entry(
    upstream_id: str, group_id: int, package_type: str, relative_path: str
) -> None:
    with job_log_context(upstream_id=upstream_id, group_id=group_id):
        async with get_db_session() as db:
            upstream = await db.get(Upstream, uuid.UUID(upstream_id))
            if upstream is None or upstream.package_type != package_type:
                logger.warning("Upstream gone before fetch", path=relative_path)
                return
            entry = await fetch_and_cache(db, get_storage(), upstream, group_id, relative_path)

        if entry is not None:
            # Count the download that triggered the miss
            await download_counter.bump_downloads_count(entry)
