"""Virtual registry CRUD and upstream ordering.

A registry chains up to max_upstreams_count upstreams by position (1 first).
Positions are kept contiguous: removing a link shifts the higher ones down,
and moving a link shifts the ones in between. New links take max + 1 under
the (registry_id, position) unique constraint, retried on conflict.
"""

import uuid
from typing import Any

from sqlalchemy import delete, exists, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from vregistry.config import settings
from vregistry.db.errors import is_unique_violation, violated_constraint
from vregistry.db.models import (
    CleanupPolicy,
    PackageType,
    Registry,
    RegistryUpstream,
    Upstream,
    generate_uuid7,
)
from vregistry.logging_config import get_logger
from vregistry.services import purge_service, upstream_service
from vregistry.services.errors import (
    MaxCountExceededError,
    PositionOutOfRangeError,
    ValidationError,
)
from vregistry.services.url_validation import send_checked

logger = get_logger(__name__)

MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 1024

PAIR_CONSTRAINT = "uq_virtual_registry_registry_upstreams_pair"
POSITION_CONSTRAINT = "uq_virtual_registry_registry_upstreams_position"


def _validate_fields(registry: Registry) -> None:
    if registry.package_type not in tuple(PackageType):
        raise ValidationError("package_type", "is not included in the list")
    if not registry.name:
        raise ValidationError("name", "can't be blank")
    if len(registry.name) > MAX_NAME_LENGTH:
        raise ValidationError("name", f"is too long (maximum is {MAX_NAME_LENGTH} characters)")
    if registry.description and len(registry.description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            "description", f"is too long (maximum is {MAX_DESCRIPTION_LENGTH} characters)"
        )


async def _lock_group_registries(db: AsyncSession, group_id: int, package_type: str) -> None:
    """Serialize registry creation per (group, package type) until the transaction ends."""
    key = f"virtual_registries:{group_id}:{package_type}"
    await db.execute(select(func.pg_advisory_xact_lock(func.hashtextextended(key, 0))))


async def _name_taken(db: AsyncSession, registry: Registry) -> bool:
    query = select(Registry.id).where(
        Registry.group_id == registry.group_id,
        Registry.package_type == registry.package_type,
        Registry.name == registry.name,
    )
    if registry.id is not None:
        query = query.where(Registry.id != registry.id)
    result = await db.execute(query)
    return result.scalar_one_or_none() is not None


# --- Registry CRUD ---


async def create_registry(
    db: AsyncSession,
    group_id: int,
    package_type: str,
    name: str,
    description: str | None = None,
) -> Registry:
    """Create a registry and its (disabled) cleanup policy."""
    registry = Registry(
        id=generate_uuid7(),
        group_id=group_id,
        package_type=package_type,
        name=name,
        description=description,
    )
    _validate_fields(registry)

    # Count and insert under the lock so concurrent creates cannot overshoot
    await _lock_group_registries(db, group_id, package_type)
    max_count = settings.virtual_registries.max_registry_count
    result = await db.execute(
        select(func.count())
        .select_from(Registry)
        .where(Registry.group_id == group_id, Registry.package_type == package_type)
    )
    if result.scalar_one() >= max_count:
        raise MaxCountExceededError(
            "group", f"has too many registries (maximum is {max_count})"
        )
    if await _name_taken(db, registry):
        raise ValidationError("name", "has already been taken")

    try:
        async with db.begin_nested():
            db.add(registry)
            await db.flush()
    except IntegrityError as e:
        if is_unique_violation(e):
            raise ValidationError("name", "has already been taken") from None
        raise

    db.add(CleanupPolicy(registry_id=registry.id, group_id=group_id))
    await db.flush()
    logger.info(
        "Registry created",
        registry_id=str(registry.id),
        group_id=group_id,
        package_type=package_type,
    )
    return registry


async def update_registry(
    db: AsyncSession,
    registry: Registry,
    name: str | None = None,
    description: str | None = None,
) -> Registry:
    """Update a registry."""
    if name is not None:
        registry.name = name
    if description is not None:
        registry.description = description
    _validate_fields(registry)
    if name is not None and await _name_taken(db, registry):
        raise ValidationError("name", "has already been taken")
    await db.flush()
    return registry


async def get_registry(
    db: AsyncSession, group_id: int, registry_id: uuid.UUID
) -> Registry | None:
    """Get a registry by ID, scoped to group."""
    result = await db.execute(
        select(Registry).where(Registry.id == registry_id, Registry.group_id == group_id)
    )
    return result.scalar_one_or_none()


async def list_registries(db: AsyncSession, group_id: int, package_type: str) -> list[Registry]:
    """List a group's registries for one package type."""
    result = await db.execute(
        select(Registry)
        .where(Registry.group_id == group_id, Registry.package_type == package_type)
        .order_by(Registry.name)
    )
    return list(result.scalars().all())


async def destroy_registry(db: AsyncSession, registry: Registry) -> None:
    """Destroy a registry.

    Upstreams linked only to this registry have their caches purged (one job
    each) and are destroyed with it. Shared upstreams just lose the link.
    """
    exclusive = await exclusive_upstreams(db, registry)
    for upstream in exclusive:
        purge_service.purge_after_commit(db, upstream)

    await db.execute(delete(RegistryUpstream).where(RegistryUpstream.registry_id == registry.id))
    for upstream in exclusive:
        await db.delete(upstream)
    await db.delete(registry)
    await db.flush()
    logger.info(
        "Registry destroyed",
        registry_id=str(registry.id),
        group_id=registry.group_id,
        purged_upstreams=len(exclusive),
    )


async def purge_cache(db: AsyncSession, registry: Registry) -> int:
    """Enqueue a cache purge for every exclusive upstream. Returns the job count."""
    exclusive = await exclusive_upstreams(db, registry)
    for upstream in exclusive:
        await purge_service.enqueue_purge(upstream)
    return len(exclusive)


# --- Upstream links ---


async def links_for(db: AsyncSession, registry_id: uuid.UUID) -> list[RegistryUpstream]:
    result = await db.execute(
        select(RegistryUpstream)
        .where(RegistryUpstream.registry_id == registry_id)
        .order_by(RegistryUpstream.position)
    )
    return list(result.scalars().all())


async def upstreams_for(db: AsyncSession, registry: Registry) -> list[Upstream]:
    """The registry's upstreams in position order."""
    result = await db.execute(
        select(Upstream)
        .join(RegistryUpstream, RegistryUpstream.upstream_id == Upstream.id)
        .where(RegistryUpstream.registry_id == registry.id)
        .order_by(RegistryUpstream.position)
    )
    return list(result.scalars().all())


async def exclusive_upstreams(db: AsyncSession, registry: Registry) -> list[Upstream]:
    """Upstreams linked to this registry and to no other."""
    other_link = aliased(RegistryUpstream)
    result = await db.execute(
        select(Upstream)
        .join(RegistryUpstream, RegistryUpstream.upstream_id == Upstream.id)
        .where(
            RegistryUpstream.registry_id == registry.id,
            ~exists().where(
                other_link.upstream_id == Upstream.id,
                other_link.registry_id != registry.id,
            ),
        )
        .order_by(RegistryUpstream.position)
    )
    return list(result.scalars().all())


async def add_upstream(
    db: AsyncSession, registry: Registry, upstream: Upstream
) -> RegistryUpstream:
    """Append an upstream to the registry's chain at max(position) + 1."""
    if upstream.group_id != registry.group_id:
        raise ValidationError("upstream", "must belong to the same group as the registry")
    if upstream.package_type != registry.package_type:
        raise ValidationError("upstream", "must have the same package type as the registry")

    max_count = settings.virtual_registries.max_upstreams_count
    for _ in range(settings.virtual_registries.position_max_attempts):
        result = await db.execute(
            select(func.max(RegistryUpstream.position)).where(
                RegistryUpstream.registry_id == registry.id
            )
        )
        position = (result.scalar_one_or_none() or 0) + 1
        if position > max_count:
            raise MaxCountExceededError(
                "registry", f"has too many upstreams (maximum is {max_count})"
            )

        link = RegistryUpstream(
            group_id=registry.group_id,
            registry_id=registry.id,
            upstream_id=upstream.id,
            position=position,
        )
        try:
            async with db.begin_nested():
                db.add(link)
                await db.flush()
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            if violated_constraint(e) == PAIR_CONSTRAINT:
                raise ValidationError("upstream", "has already been taken") from None
            logger.debug(
                "Position taken concurrently, retrying",
                registry_id=str(registry.id),
                position=position,
            )
            continue
        return link

    raise ValidationError("position", "could not be assigned, please retry")


async def remove_link(db: AsyncSession, link: RegistryUpstream) -> None:
    """Delete a link and close the gap it leaves."""
    registry_id, position = link.registry_id, link.position
    await db.delete(link)
    await db.flush()
    await sync_higher_positions(db, registry_id, position)


async def remove_upstream(db: AsyncSession, registry: Registry, upstream: Upstream) -> None:
    """Unlink an upstream from a registry. The upstream itself is kept."""
    result = await db.execute(
        select(RegistryUpstream).where(
            RegistryUpstream.registry_id == registry.id,
            RegistryUpstream.upstream_id == upstream.id,
        )
    )
    link = result.scalar_one_or_none()
    if link is None:
        raise ValidationError("upstream", "is not linked to this registry")
    await remove_link(db, link)


async def sync_higher_positions(db: AsyncSession, registry_id: uuid.UUID, position: int) -> None:
    """Shift every link above `position` down by one."""
    await db.execute(
        update(RegistryUpstream)
        .where(RegistryUpstream.registry_id == registry_id, RegistryUpstream.position > position)
        .values(position=RegistryUpstream.position - 1)
        .execution_options(synchronize_session=False)
    )


async def update_position(
    db: AsyncSession, link: RegistryUpstream, new_position: int
) -> RegistryUpstream:
    """Move a link within its chain, shifting the links in between."""
    result = await db.execute(
        select(func.count())
        .select_from(RegistryUpstream)
        .where(RegistryUpstream.registry_id == link.registry_id)
    )
    upper = min(result.scalar_one(), settings.virtual_registries.max_upstreams_count)
    if new_position < 1 or new_position > upper:
        raise PositionOutOfRangeError("position", f"must be between 1 and {upper}")

    old_position = link.position
    if new_position == old_position:
        return link

    # Intermediate states duplicate positions until the statement sequence ends
    await db.execute(text(f"SET CONSTRAINTS {POSITION_CONSTRAINT} DEFERRED"))
    if new_position < old_position:
        shift = (
            update(RegistryUpstream)
            .where(
                RegistryUpstream.registry_id == link.registry_id,
                RegistryUpstream.position >= new_position,
                RegistryUpstream.position < old_position,
            )
            .values(position=RegistryUpstream.position + 1)
        )
    else:
        shift = (
            update(RegistryUpstream)
            .where(
                RegistryUpstream.registry_id == link.registry_id,
                RegistryUpstream.position > old_position,
                RegistryUpstream.position <= new_position,
            )
            .values(position=RegistryUpstream.position - 1)
        )
    await db.execute(shift.execution_options(synchronize_session=False))
    link.position = new_position
    await db.flush()
    # Checks the deferred rows now and keeps later statements in this transaction immediate
    await db.execute(text(f"SET CONSTRAINTS {POSITION_CONSTRAINT} IMMEDIATE"))
    return link


# --- Resolution ---


async def find_upstream_for(db: AsyncSession, registry: Registry, path: str) -> Upstream | None:
    """First upstream, in position order, that has `path`.

    Upstreams answering with a non-2xx status are skipped. Transport errors
    propagate to the caller.
    """
    upstreams = await upstreams_for(db, registry)
    if not upstreams:
        return None

    timeout = settings.virtual_registries.check_timeout_seconds
    async with upstream_service.upstream_http_client(timeout) as client:
        for upstream in upstreams:
            response = await send_checked(
                client,
                "HEAD",
                upstream.url_for(path),
                headers=upstream_service.auth_headers(upstream),
            )
            if response.is_success:
                return upstream
            logger.debug(
                "Upstream does not have path",
                upstream_id=str(upstream.id),
                path=path,
                status=response.status_code,
            )
    return None


def to_dict(registry: Registry) -> dict[str, Any]:
    return {
        "id": str(registry.id),
        "group_id": registry.group_id,
        "package_type": registry.package_type,
        "name": registry.name,
        "description": registry.description,
        "created_at": registry.created_at.isoformat() if registry.created_at else None,
        "updated_at": registry.updated_at.isoformat() if registry.updated_at else None,
    }
