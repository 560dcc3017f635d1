"""
SQLAlchemy database models for vregistry.

All models use:
- UUIDv7 primary keys (time-sortable)
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps

Groups are owned by an external system and referenced by their integer id only.
Cache entries are soft-deleted through their status column and hard-deleted
later by the reclaimer; every other table uses hard deletes.
"""

import os
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar

import sqlalchemy as sa
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column, relationship


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    import time

    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class PackageType(StrEnum):
    """Package protocols a virtual registry can front."""

    MAVEN = "maven"
    NPM = "npm"
    CONTAINER = "container"


class CacheEntryStatus(StrEnum):
    DEFAULT = "default"
    PROCESSING = "processing"
    PENDING_DESTRUCTION = "pending_destruction"
    ERROR = "error"


class CleanupPolicyStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


# --- Upstreams and registries ---


class Upstream(Base):
    """A remote package registry origin.

    Credentials are Fernet-encrypted at rest; use upstream_service.get_credentials()
    to read them. Owned by one group and linked to any number of registries
    through registry_upstreams.
    """

    __tablename__ = "virtual_registry_upstreams"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    package_type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    url: Mapped[str] = mapped_column(String(255), nullable=False)
    cache_validity_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    username_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    password_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    registry_upstreams: Mapped[list["RegistryUpstream"]] = relationship(
        back_populates="upstream", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_virtual_registry_upstreams_group", "group_id", "package_type"),
        Index("ix_virtual_registry_upstreams_url", "url"),
    )

    def url_for(self, path: str) -> str:
        """Join the base URL and a relative path with exactly one slash."""
        return f"{self.url.rstrip('/')}/{path.lstrip('/')}"

    def object_storage_key(self) -> str:
        """Generate a new storage key for a blob cached from this upstream.

        Every call returns a different key. Callers persist the key on the
        cache entry once, at creation.
        """
        from vregistry.storage.keys import new_cache_entry_key

        return new_cache_entry_key(self.package_type, self.group_id, str(self.id))


class Registry(Base):
    """A named, per-group virtual registry for one package protocol."""

    __tablename__ = "virtual_registries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    package_type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    registry_upstreams: Mapped[list["RegistryUpstream"]] = relationship(
        back_populates="virtual_registry",
        order_by="RegistryUpstream.position",
        passive_deletes=True,
    )
    cleanup_policy: Mapped["CleanupPolicy | None"] = relationship(
        back_populates="virtual_registry", passive_deletes=True
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "group_id", "package_type", "name", name="uq_virtual_registries_group_name"
        ),
    )


class RegistryUpstream(Base):
    """Ordered link between a registry and an upstream. Position 1 is tried first."""

    __tablename__ = "virtual_registry_registry_upstreams"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    registry_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("virtual_registries.id", ondelete="CASCADE"),
        nullable=False,
    )
    upstream_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("virtual_registry_upstreams.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    virtual_registry: Mapped[Registry] = relationship(back_populates="registry_upstreams")
    upstream: Mapped[Upstream] = relationship(back_populates="registry_upstreams")

    __table_args__ = (
        sa.UniqueConstraint(
            "registry_id", "upstream_id", name="uq_virtual_registry_registry_upstreams_pair"
        ),
        sa.UniqueConstraint(
            "registry_id",
            "position",
            name="uq_virtual_registry_registry_upstreams_position",
            deferrable=True,
            initially="IMMEDIATE",
        ),
        sa.CheckConstraint(
            "position >= 1", name="ck_virtual_registry_registry_upstreams_position"
        ),
        Index("ix_virtual_registry_registry_upstreams_upstream", "upstream_id"),
    )


# --- Cache entries ---


class CacheEntryMixin:
    """Columns and indexes shared by every protocol's cache entry table."""

    package_type: ClassVar[PackageType]

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    relative_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    object_storage_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    file_sha1: Mapped[str] = mapped_column(String(40), nullable=False)
    file_md5: Mapped[str | None] = mapped_column(String(32), nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    upstream_etag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_type: Mapped[str] = mapped_column(
        String(255), nullable=False, default="application/octet-stream"
    )
    downloads_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    downloaded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    upstream_checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=CacheEntryStatus.DEFAULT
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    # Loose reference: no foreign key, so entries outlive a destroyed upstream
    # until the purge job and the reclaimer have released their blobs.
    upstream_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    @declared_attr.directive
    def __table_args__(cls) -> tuple:
        table = cls.__tablename__
        return (
            # At most one live entry per (upstream, relative_path).
            Index(
                f"uq_{table}_upstream_path_live",
                "upstream_id",
                "relative_path",
                unique=True,
                postgresql_where=sa.text("status = 'default'"),
            ),
            Index(f"ix_{table}_upstream_status", "upstream_id", "status"),
            Index(f"ix_{table}_status", "status"),
            Index(f"ix_{table}_group", "group_id"),
        )

    @property
    def filename(self) -> str | None:
        if not self.relative_path:
            return None
        return os.path.basename(self.relative_path)


class MavenCacheEntry(CacheEntryMixin, Base):
    __tablename__ = "virtual_registry_maven_cache_entries"

    package_type = PackageType.MAVEN


class NpmCacheEntry(CacheEntryMixin, Base):
    __tablename__ = "virtual_registry_npm_cache_entries"

    package_type = PackageType.NPM


class ContainerCacheEntry(CacheEntryMixin, Base):
    """Container blobs and manifests, addressable by content digest."""

    __tablename__ = "virtual_registry_container_cache_entries"

    package_type = PackageType.CONTAINER

    digest: Mapped[str | None] = mapped_column(String(255), nullable=True)


CacheEntry = MavenCacheEntry | NpmCacheEntry | ContainerCacheEntry

CACHE_ENTRY_MODELS: dict[str, type[MavenCacheEntry | NpmCacheEntry | ContainerCacheEntry]] = {
    PackageType.MAVEN: MavenCacheEntry,
    PackageType.NPM: NpmCacheEntry,
    PackageType.CONTAINER: ContainerCacheEntry,
}


def cache_entry_model_for(package_type: str) -> type[CacheEntry]:
    """Return the cache entry model for a package type."""
    try:
        return CACHE_ENTRY_MODELS[package_type]
    except KeyError:
        raise ValueError(f"Unknown package type: {package_type}") from None


# --- Cleanup policies ---


class CleanupPolicy(Base):
    """Scheduled eviction of stale cache entries for one registry.

    status moves idle -> running -> idle|failed. The transition into running
    is a compare-and-set performed by cleanup_service.
    """

    __tablename__ = "virtual_registry_cleanup_policies"

    registry_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("virtual_registries.id", ondelete="CASCADE"),
        primary_key=True,
    )
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    keep_n_days_after_download: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    cadence: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CleanupPolicyStatus.IDLE
    )
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_deleted_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_run_deleted_entries_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_run_detailed_metrics: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    virtual_registry: Mapped[Registry] = relationship(back_populates="cleanup_policy")

    __table_args__ = (
        Index("ix_virtual_registry_cleanup_policies_due", "enabled", "next_run_at"),
    )
