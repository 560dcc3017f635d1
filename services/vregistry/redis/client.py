"""
Shared Redis connection for the worker process.

Redis holds everything transient: the delayed job queue and its dedup locks
(jobs/queue.py) and the buffered download counters (services/download_counter.py).
Nothing in Redis is authoritative; losing it loses queued jobs and unflushed
counts, never cache entries.
"""

import redis.asyncio as aioredis

from vregistry.config import settings
from vregistry.logging_config import get_logger

logger = get_logger(__name__)

_redis: aioredis.Redis | None = None


async def init_redis() -> None:
    """Open the connection pool and verify the server answers."""
    global _redis  # noqa: PLW0603
    url = settings.redis_url
    logger.info("Connecting to Redis", host=url.host, port=url.port)
    _redis = aioredis.from_url(
        str(url),
        decode_responses=True,
        max_connections=settings.redis_max_connections,
    )
    await _redis.ping()
    logger.info("Redis connection established")


async def close_redis() -> None:
    global _redis  # noqa: PLW0603
    if _redis is None:
        return
    logger.info("Closing Redis connection pool")
    await _redis.aclose()
    _redis = None


def get_redis_client() -> aioredis.Redis:
    """Return the shared client. Raises if init_redis() has not run."""
    if _redis is None:
        raise RuntimeError("Redis client not initialized; call init_redis() first")
    return _redis
