"""Redis-backed delayed job queue with deduplication.

Layout:
- vr:jobs:<queue>        sorted set of job ids, scored by run-at (epoch seconds)
- vr:job:<job_id>        JSON payload of the job
- vr:job_lock:<key>      dedup lock holding the owning job id (SET NX EX)

A job is claimed by removing its id from the sorted set; ZREM returns 1 for
exactly one caller, so two workers never run the same job. Dedup locks are
released with a compare-and-delete so a job never frees a lock that a later
job has since taken. Delivery is at-least-once: a worker that crashes after
claiming loses the job, and the dedup TTL bounds how long the lock survives.
"""

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from vregistry.config import settings
from vregistry.logging_config import get_logger
from vregistry.redis.client import get_redis_client

logger = get_logger(__name__)

QUEUE_PREFIX = "vr:jobs:"
JOB_PREFIX = "vr:job:"
LOCK_PREFIX = "vr:job_lock:"

# Delete the lock only if it still belongs to this job.
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass
class Job:
    """A unit of background work."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    dedup_key: str | None = None
    max_attempts: int = 1
    attempt: int = 1
    # Release the dedup lock as soon as execution starts instead of when it ends.
    release_lock_on_start: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls(**json.loads(raw))


def _queue_key() -> str:
    return QUEUE_PREFIX + settings.jobs.queue_name


async def enqueue(
    name: str,
    args: dict[str, Any] | None = None,
    dedup_key: str | None = None,
    delay_seconds: float = 0,
    max_attempts: int = 1,
    release_lock_on_start: bool = False,
) -> str | None:
    """Schedule a job. Returns the job id, or None when deduplicated away."""
    job = Job(
        name=name,
        args=args or {},
        dedup_key=dedup_key,
        max_attempts=max_attempts,
        release_lock_on_start=release_lock_on_start,
    )
    redis = get_redis_client()

    if dedup_key is not None:
        acquired = await redis.set(
            LOCK_PREFIX + dedup_key, job.id, nx=True, ex=settings.jobs.dedup_ttl_seconds
        )
        if not acquired:
            logger.debug("Job deduplicated", job_name=name, dedup_key=dedup_key)
            return None

    await _push(job, delay_seconds)
    logger.debug("Job enqueued", job_name=name, job_id=job.id, delay_seconds=delay_seconds)
    return job.id


async def _push(job: Job, delay_seconds: float) -> None:
    redis = get_redis_client()
    run_at = time.time() + delay_seconds
    async with redis.pipeline(transaction=True) as pipe:
        pipe.set(JOB_PREFIX + job.id, job.to_json())
        pipe.zadd(_queue_key(), {job.id: run_at})
        await pipe.execute()


async def claim_next(now: float | None = None) -> Job | None:
    """Claim the oldest job whose run-at has passed, or None."""
    redis = get_redis_client()
    now = time.time() if now is None else now

    job_ids = await redis.zrangebyscore(_queue_key(), "-inf", now, start=0, num=10)
    for job_id in job_ids:
        if not await redis.zrem(_queue_key(), job_id):
            # Another worker claimed it first
            continue
        raw = await redis.get(JOB_PREFIX + job_id)
        if raw is None:
            logger.warning("Claimed job has no payload", job_id=job_id)
            continue
        return Job.from_json(raw)
    return None


async def release_lock(job: Job) -> None:
    """Release the job's dedup lock if it still owns it."""
    if job.dedup_key is None:
        return
    redis = get_redis_client()
    await redis.eval(_RELEASE_LOCK_SCRIPT, 1, LOCK_PREFIX + job.dedup_key, job.id)


async def complete(job: Job) -> None:
    """Drop the payload of a finished job and free its dedup lock."""
    redis = get_redis_client()
    await redis.delete(JOB_PREFIX + job.id)
    if not job.release_lock_on_start:
        await release_lock(job)


async def retry_or_fail(job: Job, error: str) -> bool:
    """Re-enqueue a failed job with linear backoff if attempts remain.

    The dedup lock stays held across retries. Returns True when re-enqueued.
    """
    if job.attempt >= job.max_attempts:
        logger.error(
            "Job failed permanently",
            job_name=job.name,
            job_id=job.id,
            attempts=job.attempt,
            error=error,
        )
        await complete(job)
        return False

    delay = settings.jobs.retry_backoff_seconds * job.attempt
    job.attempt += 1
    await _push(job, delay)
    logger.warning(
        "Job failed, retrying",
        job_name=job.name,
        job_id=job.id,
        attempt=job.attempt,
        delay_seconds=delay,
        error=error,
    )
    return True


async def queue_length() -> int:
    """Number of jobs waiting (due or not)."""
    redis = get_redis_client()
    return await redis.zcard(_queue_key())
