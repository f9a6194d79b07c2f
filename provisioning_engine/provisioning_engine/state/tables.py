"""SQLAlchemy 2.0 ORM table definitions for the provisioning state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.

Every mutable record carries a ``version`` column.  Writers update rows with
``WHERE version = :expected`` so a stale read can never overwrite a newer
state.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that round-trips as UTC on every dialect.

    SQLite stores timestamps without an offset; values read back are
    re-tagged as UTC so comparisons against ``datetime.now(UTC)`` work.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all provisioning tables."""


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateTable(Base):
    """A clonable site template and the identity its content refers to."""

    __tablename__ = "templates"

    template_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    canonical_identifier: Mapped[str] = mapped_column(String(256), nullable=False)
    canonical_domain: Mapped[str | None] = mapped_column(String(253), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


class TemplateContentItemTable(Base):
    """One content item (option, post meta, widget config) of a template."""

    __tablename__ = "template_content_items"

    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_key: Mapped[str] = mapped_column(String(512), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[Any] = mapped_column(_JsonType, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint("template_id", "item_key"),
        Index("ix_template_items_template_position", "template_id", "position"),
    )


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """A provisioned tenant and its lifecycle state."""

    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subdomain: Mapped[str] = mapped_column(String(63), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set while a clone job is queued or running; cleared when it finishes.
    active_clone_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("subdomain", name="uq_tenants_subdomain"),
        Index("ix_tenants_state", "state"),
        Index("ix_tenants_owner", "owner_account_id"),
    )


class TenantContentItemTable(Base):
    """Tenant-owned copy of a template content item."""

    __tablename__ = "tenant_content_items"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_key: Mapped[str] = mapped_column(String(512), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[Any] = mapped_column(_JsonType, nullable=True)
    source_template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    clone_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rewritten: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "item_key"),
        Index("ix_tenant_items_tenant_position", "tenant_id", "position"),
    )


# ---------------------------------------------------------------------------
# Clone jobs
# ---------------------------------------------------------------------------


class CloneJobTable(Base):
    """A template clone job, keyed by the activation that triggered it."""

    __tablename__ = "clone_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="queued")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    items_copied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_rewritten: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_clone_jobs_idempotency_key"),
        Index("ix_clone_jobs_tenant_status", "tenant_id", "status"),
    )


# ---------------------------------------------------------------------------
# Domain bindings
# ---------------------------------------------------------------------------


class DomainBindingTable(Base):
    """A custom domain being attached to a tenant."""

    __tablename__ = "domain_bindings"

    binding_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    domain: Mapped[str] = mapped_column(String(253), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_dns")
    verification_token: Mapped[str] = mapped_column(String(128), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    poll_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_check_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        # A domain may be held by at most one live (non-failed) binding.
        Index(
            "uq_domain_bindings_live_domain",
            "domain",
            unique=True,
            postgresql_where=text("state <> 'failed'"),
            sqlite_where=text("state <> 'failed'"),
        ),
        Index("ix_domain_bindings_tenant", "tenant_id"),
        Index("ix_domain_bindings_due", "state", "next_check_at"),
    )


# ---------------------------------------------------------------------------
# Subscription enforcement
# ---------------------------------------------------------------------------


class SubscriptionStateTable(Base):
    """Billing status and grace bookkeeping for one tenant."""

    __tablename__ = "subscription_states"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    billing_status: Mapped[str] = mapped_column(String(32), nullable=False, default="current")
    grace_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    grace_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    grace_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resume_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    suspension_notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_subscription_states_status_deadline", "billing_status", "grace_deadline"),)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class HistoryEventTable(Base):
    """Append-only log of every state transition."""

    __tablename__ = "history_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    from_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_history_events_event_id"),
        Index("ix_history_tenant_id", "tenant_id", "id"),
        Index("ix_history_entity", "entity_type", "entity_id"),
    )
