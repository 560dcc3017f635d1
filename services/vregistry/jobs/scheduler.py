"""Periodic scheduler for cleanup policies and the reclaimer.

Every scheduler_interval_seconds, enqueues one deduplicated cleanup job per
due policy and one reclaim job. Running several schedulers is safe: the
dedup locks collapse their enqueues, and the cleanup CAS guards the runs.
"""

import asyncio

from vregistry.config import settings
from vregistry.db.session import get_db_session
from vregistry.logging_config import get_logger
from vregistry.services import cleanup_service, reclaim_service

logger = get_logger(__name__)


async def schedule_once() -> int:
    """Enqueue due work. Returns the number of cleanup jobs enqueued."""
    async with get_db_session() as db:
        policies = await cleanup_service.due_policies(db)

    enqueued = 0
    for policy in policies:
        if await cleanup_service.enqueue_cleanup(policy) is not None:
            enqueued += 1

    await reclaim_service.enqueue_reclaim()

    if policies:
        logger.info("Scheduled cleanup policies", due=len(policies), enqueued=enqueued)
    return enqueued


async def run_scheduler() -> None:
    """Main scheduler loop, run as an async background task."""
    interval = settings.jobs.scheduler_interval_seconds
    logger.info("Scheduler started", interval_seconds=interval)

    while True:
        try:
            await schedule_once()
        except Exception as e:
            logger.error("Scheduler cycle failed", error=str(e), exc_info=e)

        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Scheduler stopping")
            return
