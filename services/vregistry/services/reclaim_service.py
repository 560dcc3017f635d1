"""Reclaimer: hard-delete cache entries marked pending_destruction.

Each pass locks a batch of marked rows with FOR UPDATE SKIP LOCKED, so
several workers can reclaim in parallel without touching the same rows,
deletes their blobs (idempotent) and then the rows.

Before each pass, live entries whose upstream row no longer exists are marked
too. Cache entries reference their upstream without a foreign key, so a fetch
that lands after the upstream's purge, or a purge that was never enqueued,
would otherwise leave rows and blobs behind forever.
"""

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.config import settings
from vregistry.db.models import CACHE_ENTRY_MODELS, CacheEntryStatus, Upstream
from vregistry.db.session import get_db_session
from vregistry.jobs import queue
from vregistry.jobs.worker import job_handler
from vregistry.logging_config import get_logger
from vregistry.storage import get_storage
from vregistry.storage.protocol import BlobStore

logger = get_logger(__name__)

RECLAIM_JOB = "virtual_registries.reclaim_cache_entries"


async def mark_orphaned_entries(db: AsyncSession, package_type: str) -> int:
    """Mark live entries of destroyed upstreams pending_destruction. Returns the count."""
    model = CACHE_ENTRY_MODELS[package_type]
    result = await db.execute(
        update(model)
        .where(
            model.status == CacheEntryStatus.DEFAULT,
            ~exists().where(Upstream.id == model.upstream_id),
        )
        .values(status=CacheEntryStatus.PENDING_DESTRUCTION)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def reclaim_batch(
    db: AsyncSession, storage: BlobStore, package_type: str, limit: int
) -> int:
    """Destroy up to `limit` pending entries of one protocol. Returns the count."""
    model = CACHE_ENTRY_MODELS[package_type]
    result = await db.execute(
        select(model)
        .where(model.status == CacheEntryStatus.PENDING_DESTRUCTION)
        .order_by(model.updated_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    entries = list(result.scalars().all())
    for entry in entries:
        await storage.delete(entry.object_storage_key)
        await db.delete(entry)
    await db.flush()
    return len(entries)


async def enqueue_reclaim() -> str | None:
    # Deduplicated only while queued: concurrent runs are safe with SKIP LOCKED
    return await queue.enqueue(
        RECLAIM_JOB, {}, dedup_key="reclaim", release_lock_on_start=True
    )


@job_handler(RECLAIM_JOB)
async def reclaim_cache_entries() -> int:
    storage = get_storage()
    limit = settings.jobs.reclaim_batch_size
    total = 0
    backlog = False
    for package_type in CACHE_ENTRY_MODELS:
        async with get_db_session() as db:
            orphaned = await mark_orphaned_entries(db, package_type)
        if orphaned:
            logger.info(
                "Marked cache entries of destroyed upstreams",
                package_type=package_type,
                count=orphaned,
            )
        async with get_db_session() as db:
            reclaimed = await reclaim_batch(db, storage, package_type, limit)
        total += reclaimed
        backlog = backlog or reclaimed >= limit
        if reclaimed:
            logger.info("Reclaimed cache entries", package_type=package_type, count=reclaimed)
    if backlog:
        # More may be waiting; continue without waiting for the scheduler
        await enqueue_reclaim()
    return total
