"""Cache purge for a single upstream.

One job per upstream marks all of its live cache entries pending_destruction.
The reclaimer deletes the blobs and rows later. Marking is idempotent, so a
retried or duplicated job is harmless.

Destroying an upstream enqueues its purge with purge_after_commit(), so a
rolled-back destroy leaves the cache of a still-existing upstream alone.
"""

import uuid
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.db.models import CacheEntryStatus, Upstream, cache_entry_model_for
from vregistry.db.session import after_commit, get_db_session
from vregistry.jobs import queue
from vregistry.jobs.worker import job_handler
from vregistry.logging_config import get_logger, job_log_context

logger = get_logger(__name__)

PURGE_JOB = "virtual_registries.purge_upstream_cache"
PURGE_MAX_ATTEMPTS = 5


def _purge_args(upstream: Upstream) -> dict[str, Any]:
    return {
        "upstream_id": str(upstream.id),
        "group_id": upstream.group_id,
        "package_type": upstream.package_type,
    }


async def _enqueue(args: dict[str, Any]) -> str | None:
    return await queue.enqueue(
        PURGE_JOB,
        args,
        dedup_key=f"purge:{args['package_type']}:{args['upstream_id']}",
        max_attempts=PURGE_MAX_ATTEMPTS,
    )


async def enqueue_purge(upstream: Upstream) -> str | None:
    """Schedule the purge of everything cached from `upstream`."""
    return await _enqueue(_purge_args(upstream))


def purge_after_commit(db: AsyncSession, upstream: Upstream) -> None:
    """Enqueue the purge once `db` commits; nothing is enqueued on rollback."""
    # Captured now: the upstream row is gone by the time the callback runs
    args = _purge_args(upstream)
    after_commit(db, lambda: _enqueue(args))


async def mark_upstream_entries(
    db: AsyncSession, package_type: str, upstream_id: uuid.UUID, group_id: int
) -> int:
    """Mark the upstream's live entries pending_destruction. Returns rows marked."""
    model = cache_entry_model_for(package_type)
    result = await db.execute(
        update(model)
        .where(
            model.upstream_id == upstream_id,
            model.group_id == group_id,
            model.status == CacheEntryStatus.DEFAULT,
        )
        .values(status=CacheEntryStatus.PENDING_DESTRUCTION)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


@job_handler(PURGE_JOB)
async def purge_upstream_cache(upstream_id: str, group_id: int, package_type: str) -> None:
    with job_log_context(upstream_id=upstream_id, group_id=group_id):
        async with get_db_session() as db:
            marked = await mark_upstream_entries(
                db, package_type, uuid.UUID(upstream_id), group_id
            )
        logger.info("Upstream cache purged", package_type=package_type, marked_entries=marked)
