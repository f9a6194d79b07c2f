"""Initial schema for the provisioning state store.

Creates templates, template and tenant content items, tenants, clone jobs,
domain bindings, subscription states and the append-only history log.

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()) for name in names
    ]


def upgrade() -> None:
    # ------------------------------------------------------------------
    # templates
    # ------------------------------------------------------------------
    op.create_table(
        "templates",
        sa.Column("template_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("canonical_identifier", sa.String(256), nullable=False),
        sa.Column("canonical_domain", sa.String(253), nullable=True),
        *_timestamps("created_at", "updated_at"),
    )

    op.create_table(
        "template_content_items",
        sa.Column("template_id", sa.String(64), nullable=False),
        sa.Column("item_key", sa.String(512), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", _json, nullable=True),
        sa.PrimaryKeyConstraint("template_id", "item_key"),
    )
    op.create_index(
        "ix_template_items_template_position",
        "template_content_items",
        ["template_id", "position"],
    )

    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("owner_account_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.String(128), nullable=True),
        sa.Column("state", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("template_id", sa.String(64), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("active_clone_job_id", sa.String(64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps("created_at", "updated_at"),
        sa.UniqueConstraint("subdomain", name="uq_tenants_subdomain"),
    )
    op.create_index("ix_tenants_state", "tenants", ["state"])
    op.create_index("ix_tenants_owner", "tenants", ["owner_account_id"])

    op.create_table(
        "tenant_content_items",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("item_key", sa.String(512), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", _json, nullable=True),
        sa.Column("source_template_id", sa.String(64), nullable=True),
        sa.Column("clone_job_id", sa.String(64), nullable=True),
        sa.Column("rewritten", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps("updated_at"),
        sa.PrimaryKeyConstraint("tenant_id", "item_key"),
    )
    op.create_index(
        "ix_tenant_items_tenant_position",
        "tenant_content_items",
        ["tenant_id", "position"],
    )

    # ------------------------------------------------------------------
    # clone_jobs
    # ------------------------------------------------------------------
    op.create_table(
        "clone_jobs",
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("template_id", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="queued"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retryable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("items_copied", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_rewritten", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps("created_at", "updated_at"),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_clone_jobs_idempotency_key"),
    )
    op.create_index("ix_clone_jobs_tenant_status", "clone_jobs", ["tenant_id", "status"])

    # ------------------------------------------------------------------
    # domain_bindings
    # ------------------------------------------------------------------
    op.create_table(
        "domain_bindings",
        sa.Column("binding_id", sa.String(64), primary_key=True),
        sa.Column("domain", sa.String(253), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("state", sa.String(32), nullable=False, server_default="pending_dns"),
        sa.Column("verification_token", sa.String(128), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("poll_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index(
        "uq_domain_bindings_live_domain",
        "domain_bindings",
        ["domain"],
        unique=True,
        postgresql_where=sa.text("state <> 'failed'"),
        sqlite_where=sa.text("state <> 'failed'"),
    )
    op.create_index("ix_domain_bindings_tenant", "domain_bindings", ["tenant_id"])
    op.create_index("ix_domain_bindings_due", "domain_bindings", ["state", "next_check_at"])

    # ------------------------------------------------------------------
    # subscription_states
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_states",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("billing_status", sa.String(32), nullable=False, server_default="current"),
        sa.Column("grace_kind", sa.String(32), nullable=False, server_default="none"),
        sa.Column("grace_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resume_state", sa.String(32), nullable=True),
        sa.Column("suspension_notified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps("updated_at"),
    )
    op.create_index(
        "ix_subscription_states_status_deadline",
        "subscription_states",
        ["billing_status", "grace_deadline"],
    )

    # ------------------------------------------------------------------
    # history_events
    # ------------------------------------------------------------------
    op.create_table(
        "history_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("from_state", sa.String(32), nullable=True),
        sa.Column("to_state", sa.String(32), nullable=True),
        sa.Column("job_id", sa.String(64), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        *_timestamps("created_at"),
        sa.UniqueConstraint("event_id", name="uq_history_events_event_id"),
    )
    op.create_index("ix_history_tenant_id", "history_events", ["tenant_id", "id"])
    op.create_index("ix_history_entity", "history_events", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("history_events")
    op.drop_table("subscription_states")
    op.drop_table("domain_bindings")
    op.drop_table("clone_jobs")
    op.drop_table("tenant_content_items")
    op.drop_table("tenants")
    op.drop_table("template_content_items")
    op.drop_table("templates")
