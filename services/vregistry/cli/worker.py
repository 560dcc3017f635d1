"""Background worker process.

Entrypoint: python -m vregistry.cli.worker

Runs the job worker (fetches, counter flushes, cleanup runs, purges,
reclaims) and the scheduler loop until SIGTERM/SIGINT.
"""

import asyncio
import signal

from vregistry.config import settings
from vregistry.logging_config import configure_logging, get_logger

logger = get_logger(__name__)

# Shutdown flag
_shutdown = asyncio.Event()


async def _startup() -> None:
    from vregistry.db.session import init_db
    from vregistry.jobs.worker import load_handlers
    from vregistry.redis.client import init_redis
    from vregistry.services.encryption_service import init_encryption
    from vregistry.storage import init_storage

    init_encryption()
    await init_db()
    await init_redis()
    await init_storage()
    load_handlers()


async def _shutdown_resources() -> None:
    from vregistry.db.session import close_db
    from vregistry.redis.client import close_redis
    from vregistry.storage import close_storage

    await close_storage()
    await close_redis()
    await close_db()


async def run(with_scheduler: bool = True) -> None:
    """Start the worker (and optionally the scheduler) and wait for shutdown."""
    from vregistry.jobs.scheduler import run_scheduler
    from vregistry.jobs.worker import run_worker

    await _startup()

    tasks = [asyncio.create_task(run_worker(), name="worker")]
    if with_scheduler:
        tasks.append(asyncio.create_task(run_scheduler(), name="scheduler"))

    try:
        await _shutdown.wait()
        logger.info("Shutdown signal received, stopping loops...")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await _shutdown_resources()


def _handle_signals() -> None:
    """Register signal handlers for graceful shutdown."""
    loop = asyncio.get_event_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _shutdown.set())


def main() -> None:
    """Main entry point for the worker."""
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name=settings.app_name
    )
    logger.info("Starting vregistry worker")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _handle_signals()

    try:
        loop.run_until_complete(run())
    except KeyboardInterrupt:
        _shutdown.set()
    finally:
        loop.close()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
