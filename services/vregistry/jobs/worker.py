"""Job worker: handler registry and the claim/execute loop.

Handlers are async functions taking the job's args as keyword arguments,
registered by name with @job_handler. Each job runs with its id and name
bound to the logging context.
"""

import asyncio
import importlib
from collections.abc import Awaitable, Callable
from typing import Any

from vregistry.config import settings
from vregistry.jobs import queue
from vregistry.jobs.queue import Job
from vregistry.logging_config import get_logger, job_log_context

logger = get_logger(__name__)

Handler = Callable[..., Awaitable[Any]]

_handlers: dict[str, Handler] = {}

# Modules whose import registers handlers
HANDLER_MODULES = (
    "vregistry.services.fetch_service",
    "vregistry.services.download_counter",
    "vregistry.services.cleanup_service",
    "vregistry.services.purge_service",
    "vregistry.services.reclaim_service",
)


def job_handler(name: str) -> Callable[[Handler], Handler]:
    """Register an async function as the handler for jobs called `name`."""

    def decorator(func: Handler) -> Handler:
        if name in _handlers and _handlers[name] is not func:
            raise ValueError(f"Duplicate job handler: {name}")
        _handlers[name] = func
        return func

    return decorator


def get_handler(name: str) -> Handler | None:
    return _handlers.get(name)


def load_handlers() -> None:
    for module in HANDLER_MODULES:
        importlib.import_module(module)


async def run_job(job: Job) -> bool:
    """Execute one claimed job. Returns True on success.

    Exceptions are logged, never raised: a failing job must not stop the worker.
    """
    handler = get_handler(job.name)
    if handler is None:
        logger.error("No handler for job", job_name=job.name, job_id=job.id)
        await queue.complete(job)
        return False

    if job.release_lock_on_start:
        await queue.release_lock(job)

    with job_log_context(job_id=job.id, job_name=job.name):
        try:
            await handler(**job.args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Job failed", attempt=job.attempt, error=str(e))
            await queue.retry_or_fail(job, str(e))
            return False

    await queue.complete(job)
    return True


async def run_worker() -> None:
    """Main worker loop. Runs as an async background task."""
    interval = settings.jobs.poll_interval_seconds
    logger.info("Job worker started", queue=settings.jobs.queue_name)

    while True:
        try:
            job = await queue.claim_next()
            if job is not None:
                await run_job(job)
                continue
        except asyncio.CancelledError:
            logger.info("Job worker stopping")
            return
        except Exception as e:
            logger.error("Job worker iteration failed", error=str(e), exc_info=e)

        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Job worker stopping")
            return
