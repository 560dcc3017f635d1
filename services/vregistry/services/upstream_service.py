"""Upstream CRUD, credentials and connectivity checks.

An upstream is a remote registry origin owned by a group. Its URL is
normalized and checked against local/private addresses on every save.
Credentials are Fernet-encrypted and all-or-none; changing the URL clears
them unless a new username and password arrive in the same update.
"""

import base64
import uuid
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.config import settings
from vregistry.db.models import (
    CacheEntryStatus,
    PackageType,
    RegistryUpstream,
    Upstream,
    cache_entry_model_for,
)
from vregistry.logging_config import get_logger
from vregistry.services.encryption_service import (
    decrypt_credential,
    encrypt_credential,
    is_encryption_available,
)
from vregistry.services.errors import ValidationError
from vregistry.services.url_validation import (
    ensure_public_url,
    normalize_url,
    send_checked,
)

logger = get_logger(__name__)

MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 1024
MAX_CREDENTIAL_LENGTH = 510

# Artifacts on Maven Central are immutable, so cached copies never go stale.
MAVEN_CENTRAL_URLS = (
    "https://repo1.maven.org/maven2",
    "https://repo.maven.apache.org/maven2",
)

# Requested by check_upstream() when nothing has been cached from the upstream yet.
CHECK_PATHS = {
    PackageType.MAVEN: "",
    PackageType.NPM: "",
    PackageType.CONTAINER: "v2/",
}


def upstream_http_client(timeout: float) -> httpx.AsyncClient:
    """HTTP client for upstream requests. Redirects are followed by send_checked()."""
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False)


# --- Credentials ---


def get_credentials(upstream: Upstream) -> tuple[str, str]:
    """Return the decrypted (username, password); empty strings when unset."""
    username = decrypt_credential(upstream.username_encrypted) if upstream.username_encrypted else ""
    password = decrypt_credential(upstream.password_encrypted) if upstream.password_encrypted else ""
    return username, password


def auth_headers(upstream: Upstream) -> dict[str, str]:
    """Basic auth header, only when both username and password are present."""
    username, password = get_credentials(upstream)
    if not username or not password:
        return {}
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def _set_credentials(upstream: Upstream, username: str, password: str) -> None:
    if not username and not password:
        upstream.username_encrypted = None
        upstream.password_encrypted = None
        return
    if not is_encryption_available():
        raise ValidationError(
            "password",
            "cannot be stored: encryption not configured. Set VREGISTRY_ENCRYPTION_KEY.",
        )
    upstream.username_encrypted = encrypt_credential(username)
    upstream.password_encrypted = encrypt_credential(password)


def _validate_credentials(username: str, password: str) -> None:
    if len(username) > MAX_CREDENTIAL_LENGTH:
        raise ValidationError(
            "username", f"is too long (maximum is {MAX_CREDENTIAL_LENGTH} characters)"
        )
    if len(password) > MAX_CREDENTIAL_LENGTH:
        raise ValidationError(
            "password", f"is too long (maximum is {MAX_CREDENTIAL_LENGTH} characters)"
        )
    if username and not password:
        raise ValidationError("password", "can't be blank")
    if password and not username:
        raise ValidationError("username", "can't be blank")


async def _ensure_unique_credentials(
    db: AsyncSession, upstream: Upstream, username: str, password: str
) -> None:
    """No two upstreams in a group may share the same (url, username, password)."""
    result = await db.execute(
        select(Upstream).where(
            Upstream.group_id == upstream.group_id,
            Upstream.package_type == upstream.package_type,
            Upstream.url == upstream.url,
        )
    )
    for other in result.scalars().all():
        if other.id is not None and other.id == upstream.id:
            continue
        if get_credentials(other) == (username, password):
            raise ValidationError("group", "already has an upstream with the same credentials")


# --- Validation ---


def _validate_fields(upstream: Upstream) -> None:
    if upstream.package_type not in tuple(PackageType):
        raise ValidationError("package_type", "is not included in the list")
    if not upstream.name:
        raise ValidationError("name", "can't be blank")
    if len(upstream.name) > MAX_NAME_LENGTH:
        raise ValidationError("name", f"is too long (maximum is {MAX_NAME_LENGTH} characters)")
    if upstream.description and len(upstream.description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            "description", f"is too long (maximum is {MAX_DESCRIPTION_LENGTH} characters)"
        )
    if not isinstance(upstream.cache_validity_hours, int) or upstream.cache_validity_hours < 0:
        raise ValidationError("cache_validity_hours", "must be greater than or equal to 0")


def is_maven_central(url: str) -> bool:
    return normalize_url(url) in MAVEN_CENTRAL_URLS


# --- CRUD ---


async def create_upstream(
    db: AsyncSession,
    group_id: int,
    package_type: str,
    name: str,
    url: str,
    description: str | None = None,
    cache_validity_hours: int | None = None,
    username: str = "",
    password: str = "",
) -> Upstream:
    """Create an upstream for a group."""
    if cache_validity_hours is None:
        cache_validity_hours = settings.virtual_registries.default_cache_validity_hours

    upstream = Upstream(
        group_id=group_id,
        package_type=package_type,
        name=name,
        description=description,
        url=normalize_url(url),
        cache_validity_hours=cache_validity_hours,
    )
    if package_type == PackageType.MAVEN and is_maven_central(upstream.url):
        upstream.cache_validity_hours = 0

    _validate_fields(upstream)
    await ensure_public_url(upstream.url)
    username = username or ""
    password = password or ""
    _validate_credentials(username, password)
    await _ensure_unique_credentials(db, upstream, username, password)
    _set_credentials(upstream, username, password)

    db.add(upstream)
    await db.flush()
    logger.info(
        "Upstream created",
        upstream_id=str(upstream.id),
        group_id=group_id,
        package_type=package_type,
    )
    return upstream


async def update_upstream(
    db: AsyncSession,
    upstream: Upstream,
    name: str | None = None,
    description: str | None = None,
    url: str | None = None,
    cache_validity_hours: int | None = None,
    username: str | None = None,
    password: str | None = None,
) -> Upstream:
    """Update an upstream. None means "not supplied"."""
    if name is not None:
        upstream.name = name
    if description is not None:
        upstream.description = description
    if cache_validity_hours is not None:
        upstream.cache_validity_hours = cache_validity_hours

    current_username, current_password = get_credentials(upstream)
    new_username = current_username if username is None else username
    new_password = current_password if password is None else password

    url_changed = False
    if url is not None:
        normalized = normalize_url(url)
        url_changed = normalized != upstream.url
        upstream.url = normalized

    if url_changed and (username is None or password is None):
        # Credentials belong to the old URL
        new_username, new_password = "", ""

    if upstream.package_type == PackageType.MAVEN and is_maven_central(upstream.url):
        upstream.cache_validity_hours = 0

    _validate_fields(upstream)
    if url_changed:
        await ensure_public_url(upstream.url)
    _validate_credentials(new_username, new_password)

    if url_changed or (new_username, new_password) != (current_username, current_password):
        await _ensure_unique_credentials(db, upstream, new_username, new_password)
        _set_credentials(upstream, new_username, new_password)

    await db.flush()
    return upstream


async def get_upstream(
    db: AsyncSession, group_id: int, upstream_id: uuid.UUID
) -> Upstream | None:
    """Get an upstream by ID, scoped to group."""
    result = await db.execute(
        select(Upstream).where(Upstream.id == upstream_id, Upstream.group_id == group_id)
    )
    return result.scalar_one_or_none()


async def list_upstreams(
    db: AsyncSession, group_id: int, package_type: str, search: str | None = None
) -> list[Upstream]:
    """List a group's upstreams, optionally filtered by a name substring."""
    query = select(Upstream).where(
        Upstream.group_id == group_id, Upstream.package_type == package_type
    )
    if search:
        query = query.where(Upstream.name.ilike(f"%{_escape_like(search)}%", escape="\\"))
    result = await db.execute(query.order_by(Upstream.name, Upstream.id))
    return list(result.scalars().all())


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def destroy_upstream(db: AsyncSession, upstream: Upstream) -> None:
    """Destroy an upstream, purging its cache and closing the gaps it leaves in registries."""
    from vregistry.services import purge_service, registry_service

    purge_service.purge_after_commit(db, upstream)

    result = await db.execute(
        select(RegistryUpstream).where(RegistryUpstream.upstream_id == upstream.id)
    )
    for link in result.scalars().all():
        await registry_service.remove_link(db, link)

    await db.delete(upstream)
    await db.flush()
    logger.info("Upstream destroyed", upstream_id=str(upstream.id), group_id=upstream.group_id)


# --- Connectivity ---


async def _check_path(db: AsyncSession, upstream: Upstream) -> str:
    model = cache_entry_model_for(upstream.package_type)
    result = await db.execute(
        select(model.relative_path)
        .where(model.upstream_id == upstream.id, model.status == CacheEntryStatus.DEFAULT)
        .order_by(model.created_at.desc())
        .limit(1)
    )
    path = result.scalar_one_or_none()
    return path if path is not None else CHECK_PATHS.get(upstream.package_type, "")


async def check_upstream(db: AsyncSession, upstream: Upstream) -> dict[str, Any]:
    """HEAD the upstream. 2xx and 404 both prove it is reachable and authorized."""
    url = upstream.url_for(await _check_path(db, upstream))
    try:
        async with upstream_http_client(settings.virtual_registries.check_timeout_seconds) as client:
            response = await send_checked(client, "HEAD", url, headers=auth_headers(upstream))
    except (httpx.HTTPError, ValidationError) as e:
        logger.warning("Upstream check failed", upstream_id=str(upstream.id), error=str(e))
        return {"success": False, "result": f"Error: {e}"}

    if response.is_success or response.status_code == 404:
        return {"success": True, "result": f"{response.status_code} {response.reason_phrase}"}
    return {
        "success": False,
        "result": f"Error: {response.status_code} - {response.reason_phrase}",
    }


def to_dict(upstream: Upstream) -> dict[str, Any]:
    """Serializable view of an upstream. Never includes the password."""
    username = decrypt_credential(upstream.username_encrypted) if upstream.username_encrypted else ""
    return {
        "id": str(upstream.id),
        "group_id": upstream.group_id,
        "package_type": upstream.package_type,
        "name": upstream.name,
        "description": upstream.description,
        "url": upstream.url,
        "cache_validity_hours": upstream.cache_validity_hours,
        "username": username,
        "created_at": upstream.created_at.isoformat() if upstream.created_at else None,
        "updated_at": upstream.updated_at.isoformat() if upstream.updated_at else None,
    }
