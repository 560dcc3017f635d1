"""Buffered download counters for cache entries.

Serving a cached file must not write to the database. Each download adds to
a Redis counter and records the latest download time; a deduplicated flush
job, delayed by counter_flush_delay_seconds, drains the buffer and applies it
with a single UPDATE. Increments arriving after the drain land in a fresh
buffer and schedule the next flush.
"""

import uuid
from datetime import datetime

from sqlalchemy import update

from vregistry.config import settings
from vregistry.db.models import CacheEntry, cache_entry_model_for, utc_now
from vregistry.db.session import get_db_session
from vregistry.jobs import queue
from vregistry.jobs.worker import job_handler
from vregistry.logging_config import get_logger
from vregistry.redis.client import get_redis_client

logger = get_logger(__name__)

COUNTER_PREFIX = "vr:downloads:"
FLUSH_JOB = "virtual_registries.flush_downloads_count"


def _counter_key(package_type: str, entry_id: str) -> str:
    return f"{COUNTER_PREFIX}{package_type}:{entry_id}:count"


def _downloaded_at_key(package_type: str, entry_id: str) -> str:
    return f"{COUNTER_PREFIX}{package_type}:{entry_id}:downloaded_at"


async def bump_downloads_count(entry: CacheEntry, increment: int = 1) -> None:
    """Record `increment` downloads of `entry` and schedule a flush."""
    package_type = entry.package_type
    entry_id = str(entry.id)
    redis = get_redis_client()

    async with redis.pipeline(transaction=True) as pipe:
        pipe.incrby(_counter_key(package_type, entry_id), increment)
        pipe.set(_downloaded_at_key(package_type, entry_id), utc_now().isoformat())
        await pipe.execute()

    await queue.enqueue(
        FLUSH_JOB,
        {"package_type": package_type, "entry_id": entry_id},
        dedup_key=f"downloads:{package_type}:{entry_id}",
        delay_seconds=settings.virtual_registries.counter_flush_delay_seconds,
        max_attempts=3,
        release_lock_on_start=True,
    )


async def pending_downloads(package_type: str, entry_id: str) -> int:
    """Increments buffered in Redis and not yet flushed."""
    redis = get_redis_client()
    raw = await redis.get(_counter_key(package_type, entry_id))
    return int(raw) if raw else 0


@job_handler(FLUSH_JOB)
async def flush_downloads_count(package_type: str, entry_id: str) -> int:
    """Apply the buffered increments for one entry. Returns the amount applied."""
    redis = get_redis_client()
    count_key = _counter_key(package_type, entry_id)
    at_key = _downloaded_at_key(package_type, entry_id)

    # Atomic drain: increments after this point go to a new buffer
    async with redis.pipeline(transaction=True) as pipe:
        pipe.getdel(count_key)
        pipe.getdel(at_key)
        raw_count, raw_at = await pipe.execute()

    count = int(raw_count) if raw_count else 0
    if count == 0:
        return 0
    downloaded_at = datetime.fromisoformat(raw_at) if raw_at else utc_now()

    model = cache_entry_model_for(package_type)
    try:
        async with get_db_session() as db:
            await db.execute(
                update(model)
                .where(model.id == uuid.UUID(entry_id))
                .values(
                    downloads_count=model.downloads_count + count,
                    downloaded_at=downloaded_at,
                )
                .execution_options(synchronize_session=False)
            )
    except Exception:
        # Put the drained amount back so it is not lost
        async with redis.pipeline(transaction=True) as pipe:
            pipe.incrby(count_key, count)
            pipe.set(at_key, downloaded_at.isoformat(), nx=True)
            await pipe.execute()
        raise

    logger.debug("Flushed download count", package_type=package_type, entry_id=entry_id, count=count)
    return count
