"""Cleanup policies: scheduled eviction of stale cache entries.

A policy moves idle -> running -> idle | failed. Entering running is an
atomic compare-and-set on the row, so at most one run per registry is in
flight no matter how many jobs were enqueued. A run marks entries of the
registry's exclusive upstreams pending_destruction when they have not been
downloaded (or, if never downloaded, created) within
keep_n_days_after_download days. next_run_at always advances by the cadence,
whether the run succeeded or failed.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.db.models import (
    CacheEntryStatus,
    CleanupPolicy,
    CleanupPolicyStatus,
    Registry,
    cache_entry_model_for,
    utc_now,
)
from vregistry.db.session import get_db_session
from vregistry.jobs import queue
from vregistry.jobs.worker import job_handler
from vregistry.logging_config import get_logger, job_log_context
from vregistry.services import registry_service
from vregistry.services.errors import ValidationError

logger = get_logger(__name__)

CLEANUP_JOB = "virtual_registries.run_cleanup_policy"

VALID_CADENCES = (1, 7, 14, 30, 90)
MIN_KEEP_DAYS = 1
MAX_KEEP_DAYS = 365
MAX_FAILURE_MESSAGE_LENGTH = 255


def next_run_after(policy: CleanupPolicy, now: datetime) -> datetime:
    return now + timedelta(days=policy.cadence)


async def get_policy(db: AsyncSession, registry_id: uuid.UUID) -> CleanupPolicy | None:
    return await db.get(CleanupPolicy, registry_id)


async def update_policy(
    db: AsyncSession,
    policy: CleanupPolicy,
    enabled: bool | None = None,
    keep_n_days_after_download: int | None = None,
    cadence: int | None = None,
) -> CleanupPolicy:
    """Update policy settings. Enabling or changing the cadence reschedules it."""
    if cadence is not None and cadence not in VALID_CADENCES:
        raise ValidationError(
            "cadence", f"must be one of {', '.join(str(c) for c in VALID_CADENCES)}"
        )
    if keep_n_days_after_download is not None and not (
        MIN_KEEP_DAYS <= keep_n_days_after_download <= MAX_KEEP_DAYS
    ):
        raise ValidationError(
            "keep_n_days_after_download",
            f"must be between {MIN_KEEP_DAYS} and {MAX_KEEP_DAYS}",
        )

    reschedule = False
    if enabled is not None:
        reschedule = enabled and not policy.enabled
        policy.enabled = enabled
    if keep_n_days_after_download is not None:
        policy.keep_n_days_after_download = keep_n_days_after_download
    if cadence is not None:
        reschedule = reschedule or cadence != policy.cadence
        policy.cadence = cadence

    if policy.enabled and (reschedule or policy.next_run_at is None):
        policy.next_run_at = next_run_after(policy, utc_now())

    await db.flush()
    return policy


async def due_policies(db: AsyncSession, now: datetime | None = None) -> list[CleanupPolicy]:
    """Enabled policies whose next run is due and that are not already running."""
    now = now or utc_now()
    result = await db.execute(
        select(CleanupPolicy).where(
            CleanupPolicy.enabled.is_(True),
            CleanupPolicy.next_run_at <= now,
            CleanupPolicy.status != CleanupPolicyStatus.RUNNING,
        )
    )
    return list(result.scalars().all())


async def enqueue_cleanup(policy: CleanupPolicy) -> str | None:
    return await queue.enqueue(
        CLEANUP_JOB,
        {"registry_id": str(policy.registry_id)},
        dedup_key=f"cleanup:{policy.registry_id}",
    )


async def try_start_run(
    db: AsyncSession, registry_id: uuid.UUID, now: datetime | None = None
) -> bool:
    """Compare-and-set a due policy into running.

    False if another run holds it, or if a run finished after this job was
    enqueued and already moved next_run_at past now.
    """
    now = now or utc_now()
    result = await db.execute(
        update(CleanupPolicy)
        .where(
            CleanupPolicy.registry_id == registry_id,
            CleanupPolicy.enabled.is_(True),
            CleanupPolicy.next_run_at <= now,
            CleanupPolicy.status != CleanupPolicyStatus.RUNNING,
        )
        .values(status=CleanupPolicyStatus.RUNNING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_stale_entries(
    db: AsyncSession, policy: CleanupPolicy, now: datetime
) -> dict[str, dict[str, int]]:
    """Mark expired entries of the registry's exclusive upstreams.

    Returns per-protocol metrics: {package_type: {deleted_entries_count, deleted_size}}.
    """
    registry = await db.get(Registry, policy.registry_id)
    if registry is None:
        return {}

    metrics = {registry.package_type: {"deleted_entries_count": 0, "deleted_size": 0}}
    upstream_ids = [u.id for u in await registry_service.exclusive_upstreams(db, registry)]
    if not upstream_ids:
        return metrics

    model = cache_entry_model_for(registry.package_type)
    threshold = now - timedelta(days=policy.keep_n_days_after_download)
    result = await db.execute(
        update(model)
        .where(
            model.upstream_id.in_(upstream_ids),
            model.group_id == policy.group_id,
            model.status == CacheEntryStatus.DEFAULT,
            func.coalesce(model.downloaded_at, model.created_at) < threshold,
        )
        .values(status=CacheEntryStatus.PENDING_DESTRUCTION)
        .returning(model.size)
        .execution_options(synchronize_session=False)
    )
    sizes = list(result.scalars().all())
    metrics[registry.package_type] = {
        "deleted_entries_count": len(sizes),
        "deleted_size": sum(sizes),
    }
    return metrics


def complete_run(
    policy: CleanupPolicy, metrics: dict[str, dict[str, int]], now: datetime
) -> None:
    policy.status = CleanupPolicyStatus.IDLE
    policy.last_run_at = now
    policy.last_run_deleted_entries_count = sum(
        m["deleted_entries_count"] for m in metrics.values()
    )
    policy.last_run_deleted_size = sum(m["deleted_size"] for m in metrics.values())
    policy.last_run_detailed_metrics = metrics
    policy.failure_message = None
    policy.next_run_at = next_run_after(policy, now)


async def fail_run(
    db: AsyncSession, registry_id: uuid.UUID, message: str, now: datetime
) -> None:
    policy = await db.get(CleanupPolicy, registry_id)
    if policy is None:
        return
    policy.status = CleanupPolicyStatus.FAILED
    policy.last_run_at = now
    policy.failure_message = message[:MAX_FAILURE_MESSAGE_LENGTH]
    policy.next_run_at = next_run_after(policy, now)
    await db.flush()


@job_handler(CLEANUP_JOB)
async def run_cleanup_policy(registry_id: str) -> None:
    rid = uuid.UUID(registry_id)
    now = utc_now()

    with job_log_context(registry_id=registry_id):
        async with get_db_session() as db:
            started = await try_start_run(db, rid, now)
        if not started:
            logger.info("Cleanup policy not started: not due, disabled or already running")
            return

        try:
            async with get_db_session() as db:
                policy = await get_policy(db, rid)
                if policy is None:
                    return
                metrics = await mark_stale_entries(db, policy, now)
                complete_run(policy, metrics, now)
        except Exception as e:
            logger.exception("Cleanup policy run failed", error=str(e))
            async with get_db_session() as db:
                await fail_run(db, rid, str(e), now)
            return

        logger.info(
            "Cleanup policy run finished",
            deleted_entries=policy.last_run_deleted_entries_count,
            deleted_size=policy.last_run_deleted_size,
        )


def policy_to_dict(policy: CleanupPolicy) -> dict[str, Any]:
    return {
        "registry_id": str(policy.registry_id),
        "group_id": policy.group_id,
        "enabled": policy.enabled,
        "keep_n_days_after_download": policy.keep_n_days_after_download,
        "cadence": policy.cadence,
        "status": policy.status,
        "next_run_at": policy.next_run_at.isoformat() if policy.next_run_at else None,
        "last_run_at": policy.last_run_at.isoformat() if policy.last_run_at else None,
        "last_run_deleted_size": policy.last_run_deleted_size,
        "last_run_deleted_entries_count": policy.last_run_deleted_entries_count,
        "last_run_detailed_metrics": policy.last_run_detailed_metrics,
        "failure_message": policy.failure_message,
    }
