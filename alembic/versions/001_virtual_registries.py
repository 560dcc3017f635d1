"""Virtual registries.

Creates the virtual registry tables:
- virtual_registry_upstreams: remote registry origins owned by a group
- virtual_registries: per-group registries for one package type
- virtual_registry_registry_upstreams: ordered registry -> upstream links
- virtual_registry_{maven,npm,container}_cache_entries: cached files
- virtual_registry_cleanup_policies: scheduled eviction, 1:1 with registries

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CACHE_ENTRY_TABLES = (
    "virtual_registry_maven_cache_entries",
    "virtual_registry_npm_cache_entries",
    "virtual_registry_container_cache_entries",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def _create_cache_entry_table(table: str, extra: list[sa.Column]) -> None:
    op.create_table(
        table,
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("group_id", sa.BigInteger, nullable=False),
        sa.Column("upstream_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("relative_path", sa.String(1024), nullable=False),
        sa.Column("object_storage_key", sa.String(1024), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("file_sha1", sa.String(40), nullable=False),
        sa.Column("file_md5", sa.String(32), nullable=True),
        sa.Column("size", sa.BigInteger, nullable=False),
        sa.Column("upstream_etag", sa.String(255), nullable=True),
        sa.Column(
            "content_type",
            sa.String(255),
            nullable=False,
            server_default="application/octet-stream",
        ),
        sa.Column("downloads_count", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("downloaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "upstream_checked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="default"),
        *extra,
        *_timestamps(),
    )
    op.create_index(
        f"uq_{table}_upstream_path_live",
        table,
        ["upstream_id", "relative_path"],
        unique=True,
        postgresql_where=sa.text("status = 'default'"),
    )
    op.create_index(f"ix_{table}_upstream_status", table, ["upstream_id", "status"])
    op.create_index(f"ix_{table}_status", table, ["status"])
    op.create_index(f"ix_{table}_group", table, ["group_id"])


def upgrade() -> None:
    op.create_table(
        "virtual_registry_upstreams",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("group_id", sa.BigInteger, nullable=False),
        sa.Column("package_type", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(1024), nullable=True),
        sa.Column("url", sa.String(255), nullable=False),
        sa.Column("cache_validity_hours", sa.Integer, nullable=False, server_default="24"),
        sa.Column("username_encrypted", sa.Text, nullable=True),
        sa.Column("password_encrypted", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_virtual_registry_upstreams_group",
        "virtual_registry_upstreams",
        ["group_id", "package_type"],
    )
    op.create_index("ix_virtual_registry_upstreams_url", "virtual_registry_upstreams", ["url"])

    op.create_table(
        "virtual_registries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("group_id", sa.BigInteger, nullable=False),
        sa.Column("package_type", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(1024), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "group_id", "package_type", "name", name="uq_virtual_registries_group_name"
        ),
    )

    op.create_table(
        "virtual_registry_registry_upstreams",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("group_id", sa.BigInteger, nullable=False),
        sa.Column(
            "registry_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("virtual_registries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "upstream_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("virtual_registry_upstreams.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.UniqueConstraint(
            "registry_id", "upstream_id", name="uq_virtual_registry_registry_upstreams_pair"
        ),
        # Deferrable so reorders can pass through duplicate positions mid-transaction
        sa.UniqueConstraint(
            "registry_id",
            "position",
            name="uq_virtual_registry_registry_upstreams_position",
            deferrable=True,
            initially="IMMEDIATE",
        ),
        sa.CheckConstraint("position >= 1", name="ck_virtual_registry_registry_upstreams_position"),
    )
    op.create_index(
        "ix_virtual_registry_registry_upstreams_upstream",
        "virtual_registry_registry_upstreams",
        ["upstream_id"],
    )

    _create_cache_entry_table("virtual_registry_maven_cache_entries", [])
    _create_cache_entry_table("virtual_registry_npm_cache_entries", [])
    _create_cache_entry_table(
        "virtual_registry_container_cache_entries",
        [sa.Column("digest", sa.String(255), nullable=True)],
    )

    op.create_table(
        "virtual_registry_cleanup_policies",
        sa.Column(
            "registry_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("virtual_registries.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("group_id", sa.BigInteger, nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "keep_n_days_after_download", sa.Integer, nullable=False, server_default="30"
        ),
        sa.Column("cadence", sa.Integer, nullable=False, server_default="7"),
        sa.Column("status", sa.String(20), nullable=False, server_default="idle"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_deleted_size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column(
            "last_run_deleted_entries_count", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column(
            "last_run_detailed_metrics",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("failure_message", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_virtual_registry_cleanup_policies_due",
        "virtual_registry_cleanup_policies",
        ["enabled", "next_run_at"],
    )


def downgrade() -> None:
    op.drop_table("virtual_registry_cleanup_policies")
    for table in reversed(CACHE_ENTRY_TABLES):
        op.drop_table(table)
    op.drop_table("virtual_registry_registry_upstreams")
    op.drop_table("virtual_registries")
    op.drop_table("virtual_registry_upstreams")
