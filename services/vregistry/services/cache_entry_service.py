"""Cache entry persistence: race-safe upsert, validation, lookup and staleness.

Concurrent fetches of the same (upstream, relative_path) race to insert. The
partial unique index on live entries lets exactly one insert win; the losers
see a unique violation inside their savepoint, re-read the winner's row and
apply their update to it instead.
"""

import os
import re
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.config import settings
from vregistry.db.errors import is_unique_violation
from vregistry.db.models import (
    CacheEntry,
    CacheEntryStatus,
    PackageType,
    Upstream,
    cache_entry_model_for,
    utc_now,
)
from vregistry.logging_config import get_logger
from vregistry.services.errors import UpsertConflictError, ValidationError
from vregistry.storage.protocol import BlobStore

logger = get_logger(__name__)

SHA1_PATTERN = re.compile(r"^[0-9a-f]{40}$")
MD5_PATTERN = re.compile(r"^[0-9a-f]{32}$")

MAX_PATH_LENGTH = 1024
MAX_HEADER_VALUE_LENGTH = 255

UPDATABLE_FIELDS = frozenset(
    {
        "file_sha1",
        "file_md5",
        "size",
        "upstream_etag",
        "content_type",
        "upstream_checked_at",
        "downloaded_at",
    }
)
CONTAINER_FIELDS = frozenset({"digest"})


def validate_entry(entry: CacheEntry, file_present: bool) -> None:
    """Raise ValidationError for the first invalid field."""
    if not file_present:
        raise ValidationError("file", "can't be blank")
    if not entry.relative_path:
        raise ValidationError("relative_path", "can't be blank")
    if len(entry.relative_path) > MAX_PATH_LENGTH:
        raise ValidationError(
            "relative_path", f"is too long (maximum is {MAX_PATH_LENGTH} characters)"
        )
    if not entry.object_storage_key:
        raise ValidationError("object_storage_key", "can't be blank")
    if len(entry.object_storage_key) > MAX_PATH_LENGTH:
        raise ValidationError(
            "object_storage_key", f"is too long (maximum is {MAX_PATH_LENGTH} characters)"
        )
    if not entry.file_sha1:
        raise ValidationError("file_sha1", "can't be blank")
    if not SHA1_PATTERN.match(entry.file_sha1):
        raise ValidationError("file_sha1", "must be 40 lowercase hexadecimal characters")
    if entry.file_md5 is not None:
        if settings.virtual_registries.restricted_crypto:
            raise ValidationError("file_md5", "must be absent in restricted cryptography mode")
        if not MD5_PATTERN.match(entry.file_md5):
            raise ValidationError("file_md5", "must be 32 lowercase hexadecimal characters")
    if entry.size is None:
        raise ValidationError("size", "can't be blank")
    if entry.size < 0:
        raise ValidationError("size", "must be greater than or equal to 0")
    for field in ("upstream_etag", "content_type"):
        value = getattr(entry, field)
        if value is not None and len(value) > MAX_HEADER_VALUE_LENGTH:
            raise ValidationError(
                field, f"is too long (maximum is {MAX_HEADER_VALUE_LENGTH} characters)"
            )


async def find_live_entry(
    db: AsyncSession, package_type: str, upstream_id: uuid.UUID, relative_path: str
) -> CacheEntry | None:
    """The single live (status=default) entry for (upstream, relative_path), if any."""
    model = cache_entry_model_for(package_type)
    result = await db.execute(
        select(model).where(
            model.upstream_id == upstream_id,
            model.relative_path == relative_path,
            model.status == CacheEntryStatus.DEFAULT,
        )
    )
    return result.scalar_one_or_none()


async def upsert_cache_entry(
    db: AsyncSession,
    storage: BlobStore,
    upstream: Upstream,
    group_id: int,
    relative_path: str,
    updates: dict[str, Any],
) -> CacheEntry:
    """Create or update the live entry for (upstream, relative_path).

    `updates` may carry the blob under "file" (bytes). The blob is written
    under the entry's storage key, which is generated on insert and never
    changed afterwards. Raises UpsertConflictError when every attempt lost
    the insert race, ValidationError for invalid input.
    """
    model = cache_entry_model_for(upstream.package_type)
    updates = dict(updates)
    file: bytes | None = updates.pop("file", None)

    allowed = UPDATABLE_FIELDS
    if model.package_type == PackageType.CONTAINER:
        allowed = allowed | CONTAINER_FIELDS
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f"Unsupported cache entry fields: {sorted(unknown)}")

    if settings.virtual_registries.restricted_crypto:
        updates["file_md5"] = None

    attempts = settings.virtual_registries.upsert_max_attempts
    for attempt in range(1, attempts + 1):
        entry = await find_live_entry(db, upstream.package_type, upstream.id, relative_path)
        is_new = entry is None
        if entry is None:
            entry = model(
                group_id=group_id,
                upstream_id=upstream.id,
                relative_path=relative_path,
                object_storage_key=upstream.object_storage_key(),
                file_name=os.path.basename(relative_path),
                status=CacheEntryStatus.DEFAULT,
                downloads_count=0,
            )
        for field, value in updates.items():
            setattr(entry, field, value)
        validate_entry(entry, file_present=file is not None or not is_new)

        try:
            async with db.begin_nested():
                db.add(entry)
                await db.flush()
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            logger.debug(
                "Cache entry insert lost race, retrying",
                upstream_id=str(upstream.id),
                relative_path=relative_path,
                attempt=attempt,
            )
            continue

        if file is not None:
            await storage.put(entry.object_storage_key, file, content_type=entry.content_type)
        return entry

    raise UpsertConflictError(
        f"Could not upsert cache entry for {relative_path} after {attempts} attempts"
    )


def is_stale(entry: CacheEntry, upstream: Upstream | None, now: datetime | None = None) -> bool:
    """Whether the entry must be revalidated against its upstream."""
    if upstream is None:
        return True
    if upstream.cache_validity_hours == 0:
        return False
    now = now or utc_now()
    return entry.upstream_checked_at + timedelta(hours=upstream.cache_validity_hours) <= now


async def get_entry(
    db: AsyncSession, package_type: str, group_id: int, entry_id: uuid.UUID
) -> CacheEntry | None:
    model = cache_entry_model_for(package_type)
    result = await db.execute(
        select(model).where(model.id == entry_id, model.group_id == group_id)
    )
    return result.scalar_one_or_none()


async def list_entries(
    db: AsyncSession,
    upstream: Upstream,
    search: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[CacheEntry]:
    """Live entries of an upstream, optionally filtered by a path substring."""
    model = cache_entry_model_for(upstream.package_type)
    query = select(model).where(
        model.upstream_id == upstream.id,
        model.group_id == upstream.group_id,
        model.status == CacheEntryStatus.DEFAULT,
    )
    if search:
        escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        query = query.where(model.relative_path.ilike(f"%{escaped}%", escape="\\"))
    result = await db.execute(
        query.order_by(model.relative_path).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def mark_for_destruction(db: AsyncSession, entry: CacheEntry) -> CacheEntry:
    """Soft-delete an entry. Its blob and row are removed by the reclaimer."""
    entry.status = CacheEntryStatus.PENDING_DESTRUCTION
    await db.flush()
    return entry


def to_dict(entry: CacheEntry) -> dict[str, Any]:
    data = {
        "id": str(entry.id),
        "group_id": entry.group_id,
        "upstream_id": str(entry.upstream_id),
        "relative_path": entry.relative_path,
        "file_name": entry.file_name,
        "file_sha1": entry.file_sha1,
        "file_md5": entry.file_md5,
        "size": entry.size,
        "upstream_etag": entry.upstream_etag,
        "content_type": entry.content_type,
        "downloads_count": entry.downloads_count,
        "downloaded_at": entry.downloaded_at.isoformat() if entry.downloaded_at else None,
        "upstream_checked_at": entry.upstream_checked_at.isoformat()
        if entry.upstream_checked_at
        else None,
        "status": entry.status,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
    }
    if entry.package_type == PackageType.CONTAINER:
        data["digest"] = entry.digest
    return data
