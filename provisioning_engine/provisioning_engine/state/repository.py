"""Repository classes providing access to the provisioning state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``registry_scope`` context manager).

Concurrency control is optimistic and lives entirely in the database: every
state change is a conditional ``UPDATE`` guarded by the expected state or
``version``.  Zero affected rows means another writer got there first and is
reported as :class:`~provisioning_engine.errors.StateConflict`.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from provisioning_engine.errors import (
    BindingNotFound,
    ContentLocked,
    InvalidTransition,
    StateConflict,
    TemplateNotFound,
    TenantNotFound,
)
from provisioning_engine.models.clone_job import CloneJobStatus
from provisioning_engine.models.domain import DOMAIN_TRANSITIONS, OPEN_DOMAIN_STATES, DomainState
from provisioning_engine.models.events import HistoryEntity
from provisioning_engine.models.subscription import BillingStatus
from provisioning_engine.models.tenant import CONTENT_LOCKED_STATES, TenantState, can_transition
from provisioning_engine.state.tables import (
    CloneJobTable,
    DomainBindingTable,
    HistoryEventTable,
    SubscriptionStateTable,
    TemplateContentItemTable,
    TemplateTable,
    TenantContentItemTable,
    TenantTable,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _value(state: Any) -> Any:
    """Unwrap enum members so they can be bound as plain strings."""
    return getattr(state, "value", state)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(session: AsyncSession, table: Any, values: dict[str, Any]) -> bool:
    """Insert a row with ``ON CONFLICT DO NOTHING``; return whether it landed.

    No conflict target is given, so a clash on *any* unique constraint or
    unique index suppresses the insert.  The single statement makes
    "create if absent" atomic without a preceding ``SELECT``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing()
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing()
    result = await session.execute(stmt)
    await session.flush()
    return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


async def _conditional_update(session: AsyncSession, table: Any, criteria: list[Any], values: dict[str, Any]) -> int:
    """Run ``UPDATE table SET values WHERE criteria`` and return the row count."""
    stmt = update(table).where(*criteria).values(**values).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    await session.flush()
    return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# HistoryRepository
# ---------------------------------------------------------------------------


class HistoryRepository:
    """Append-only transition history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        *,
        tenant_id: str,
        entity_type: HistoryEntity,
        entity_id: str,
        event_type: str,
        from_state: Any = None,
        to_state: Any = None,
        job_id: str | None = None,
        detail: str | None = None,
    ) -> HistoryEventTable:
        """Append one history record.  Records are never updated or deleted."""
        row = HistoryEventTable(
            event_id=_new_id(),
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            event_type=event_type,
            from_state=_value(from_state),
            to_state=_value(to_state),
            job_id=job_id,
            detail=detail,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        entity_type: HistoryEntity | None = None,
        limit: int = 200,
    ) -> list[HistoryEventTable]:
        """Return history for *tenant_id*, oldest first."""
        stmt = select(HistoryEventTable).where(HistoryEventTable.tenant_id == tenant_id)
        if entity_type is not None:
            stmt = stmt.where(HistoryEventTable.entity_type == entity_type.value)
        stmt = stmt.order_by(HistoryEventTable.id.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TenantRepository:
    """Tenant records and their lifecycle transitions."""

    def __init__(self, session: AsyncSession, history: HistoryRepository | None = None) -> None:
        self._session = session
        self._history = history or HistoryRepository(session)

    async def get(self, tenant_id: str) -> TenantTable | None:
        return await self._session.get(TenantTable, tenant_id, populate_existing=True)

    async def require(self, tenant_id: str) -> TenantTable:
        row = await self.get(tenant_id)
        if row is None:
            raise TenantNotFound(f"tenant {tenant_id} does not exist")
        return row

    async def list_by_state(self, *states: TenantState) -> list[TenantTable]:
        stmt = (
            select(TenantTable)
            .where(TenantTable.state.in_([s.value for s in states]))
            .order_by(TenantTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        *,
        tenant_id: str,
        owner_account_id: str,
        template_id: str,
        subdomain: str,
        subscription_id: str | None = None,
    ) -> TenantTable:
        """Insert a tenant in ``pending``.

        Raises
        ------
        StateConflict
            If the tenant id or the subdomain is already taken.
        """
        now = datetime.now(UTC)
        inserted = await _dialect_insert_nothing(
            self._session,
            TenantTable,
            {
                "tenant_id": tenant_id,
                "owner_account_id": owner_account_id,
                "subscription_id": subscription_id,
                "state": TenantState.PENDING.value,
                "template_id": template_id,
                "subdomain": subdomain,
                "version": 0,
                "created_at": now,
                "updated_at": now,
            },
        )
        if not inserted:
            raise StateConflict(f"tenant {tenant_id} or subdomain {subdomain} already exists")

        await self._history.record(
            tenant_id=tenant_id,
            entity_type=HistoryEntity.TENANT,
            entity_id=tenant_id,
            event_type="created",
            to_state=TenantState.PENDING,
        )
        logger.info("Created tenant %s (subdomain=%s, template=%s)", tenant_id, subdomain, template_id)
        return await self.require(tenant_id)

    async def transition(
        self,
        tenant_id: str,
        from_state: TenantState,
        to_state: TenantState,
        *,
        job_id: str | None = None,
        detail: str | None = None,
        last_error: str | None = None,
        clear_error: bool = False,
    ) -> TenantTable:
        """Move a tenant from *from_state* to *to_state*.

        The update only applies while the stored state still equals
        *from_state*, so two writers racing on the same tenant cannot both
        win.  A history record is appended on success.

        Raises
        ------
        InvalidTransition
            If the pair is not a legal lifecycle move.
        TenantNotFound
            If the tenant does not exist.
        StateConflict
            If the stored state is no longer *from_state*.
        """
        if not can_transition(from_state, to_state):
            raise InvalidTransition(f"tenant cannot move from {from_state.value} to {to_state.value}")

        values: dict[str, Any] = {
            "state": to_state.value,
            "version": TenantTable.version + 1,
            "updated_at": datetime.now(UTC),
        }
        if last_error is not None:
            values["last_error"] = last_error
        elif clear_error:
            values["last_error"] = None

        count = await _conditional_update(
            self._session,
            TenantTable,
            [TenantTable.tenant_id == tenant_id, TenantTable.state == from_state.value],
            values,
        )
        if count == 0:
            current = await self.require(tenant_id)
            raise StateConflict(
                f"tenant {tenant_id} is {current.state}, expected {from_state.value}",
            )

        await self._history.record(
            tenant_id=tenant_id,
            entity_type=HistoryEntity.TENANT,
            entity_id=tenant_id,
            event_type="transition",
            from_state=from_state,
            to_state=to_state,
            job_id=job_id,
            detail=detail,
        )
        logger.info("Tenant %s: %s -> %s", tenant_id, from_state.value, to_state.value)
        return await self.require(tenant_id)

    async def set_last_error(self, tenant_id: str, error: str | None) -> None:
        """Record a user-visible error without touching the lifecycle state."""
        count = await _conditional_update(
            self._session,
            TenantTable,
            [TenantTable.tenant_id == tenant_id],
            {"last_error": error, "version": TenantTable.version + 1, "updated_at": datetime.now(UTC)},
        )
        if count == 0:
            raise TenantNotFound(f"tenant {tenant_id} does not exist")

    async def attach_subscription(self, tenant_id: str, subscription_id: str) -> TenantTable:
        """Record the billing subscription that activated the tenant."""
        count = await _conditional_update(
            self._session,
            TenantTable,
            [TenantTable.tenant_id == tenant_id],
            {
                "subscription_id": subscription_id,
                "version": TenantTable.version + 1,
                "updated_at": datetime.now(UTC),
            },
        )
        if count == 0:
            raise TenantNotFound(f"tenant {tenant_id} does not exist")
        return await self.require(tenant_id)

    # -- in-flight clone marker ------------------------------------------------

    async def claim_clone_slot(self, tenant_id: str, job_id: str) -> bool:
        """Atomically mark *job_id* as the tenant's in-flight clone.

        Succeeds when no job holds the slot, or when *job_id* already does.
        """
        count = await _conditional_update(
            self._session,
            TenantTable,
            [
                TenantTable.tenant_id == tenant_id,
                or_(
                    TenantTable.active_clone_job_id.is_(None),
                    TenantTable.active_clone_job_id == job_id,
                ),
            ],
            {"active_clone_job_id": job_id, "version": TenantTable.version + 1},
        )
        return count > 0

    async def release_clone_slot(self, tenant_id: str, job_id: str) -> bool:
        """Clear the in-flight marker if *job_id* still holds it."""
        count = await _conditional_update(
            self._session,
            TenantTable,
            [TenantTable.tenant_id == tenant_id, TenantTable.active_clone_job_id == job_id],
            {"active_clone_job_id": None, "version": TenantTable.version + 1},
        )
        return count > 0

    async def assert_content_mutable(self, tenant_id: str) -> TenantTable:
        """Raise :class:`ContentLocked` when the tenant's content is read-only."""
        row = await self.require(tenant_id)
        if TenantState(row.state) in CONTENT_LOCKED_STATES:
            raise ContentLocked(f"content is read-only while the tenant is {row.state}")
        return row


# ---------------------------------------------------------------------------
# CloneJobRepository
# ---------------------------------------------------------------------------


class CloneJobRepository:
    """Clone jobs, keyed by their idempotency key."""

    def __init__(self, session: AsyncSession, history: HistoryRepository | None = None) -> None:
        self._session = session
        self._history = history or HistoryRepository(session)

    async def get(self, job_id: str) -> CloneJobTable | None:
        return await self._session.get(CloneJobTable, job_id, populate_existing=True)

    async def get_by_key(self, idempotency_key: str) -> CloneJobTable | None:
        stmt = (
            select(CloneJobTable)
            .where(CloneJobTable.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_for_tenant(self, tenant_id: str) -> CloneJobTable | None:
        stmt = (
            select(CloneJobTable)
            .where(CloneJobTable.tenant_id == tenant_id)
            .order_by(CloneJobTable.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def has_completed(self, tenant_id: str) -> bool:
        """Return ``True`` when any clone for *tenant_id* has completed."""
        stmt = select(func.count()).where(
            CloneJobTable.tenant_id == tenant_id,
            CloneJobTable.status == CloneJobStatus.COMPLETED.value,
            CloneJobTable.discarded.is_(False),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def list_retry_due(self, now: datetime, limit: int = 100) -> list[CloneJobTable]:
        """Failed, retryable jobs whose backoff has elapsed and whose tenant is still cloning."""
        stmt = (
            select(CloneJobTable)
            .join(TenantTable, TenantTable.tenant_id == CloneJobTable.tenant_id)
            .where(
                TenantTable.state == TenantState.CLONING.value,
                CloneJobTable.status == CloneJobStatus.FAILED.value,
                CloneJobTable.retryable.is_(True),
                CloneJobTable.next_attempt_at.is_not(None),
                CloneJobTable.next_attempt_at <= now,
            )
            .order_by(CloneJobTable.next_attempt_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_abandoned(self, stale_before: datetime, limit: int = 100) -> list[CloneJobTable]:
        """Running or rewriting jobs whose last write is older than *stale_before*."""
        stmt = (
            select(CloneJobTable)
            .where(
                CloneJobTable.status.in_([CloneJobStatus.RUNNING.value, CloneJobStatus.REWRITING.value]),
                CloneJobTable.updated_at <= stale_before,
            )
            .order_by(CloneJobTable.updated_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(self, values: dict[str, Any], *, expected_version: int | None) -> CloneJobTable:
        """Insert a clone job, or update it conditioned on *expected_version*.

        Parameters
        ----------
        values:
            Column values.  Must include ``job_id``; an insert also needs
            ``tenant_id``, ``template_id`` and ``idempotency_key``.
        expected_version:
            ``None`` to insert.  Otherwise the version the caller read; the
            update applies only if the stored row still has that version.

        Raises
        ------
        StateConflict
            On a duplicate insert or a stale version.
        """
        job_id = values["job_id"]
        now = datetime.now(UTC)
        fields = {k: _value(v) for k, v in values.items()}

        if expected_version is None:
            fields.setdefault("status", CloneJobStatus.QUEUED.value)
            fields.update(version=0, created_at=now, updated_at=now)
            if not await _dialect_insert_nothing(self._session, CloneJobTable, fields):
                raise StateConflict(f"clone job {job_id} or its idempotency key already exists")
            row = await self.get(job_id)
            assert row is not None
            await self._history.record(
                tenant_id=row.tenant_id,
                entity_type=HistoryEntity.CLONE_JOB,
                entity_id=job_id,
                event_type="created",
                to_state=row.status,
                job_id=job_id,
            )
            return row

        previous = await self.get(job_id)
        if previous is None:
            raise StateConflict(f"clone job {job_id} does not exist")
        previous_status = previous.status

        fields.pop("job_id")
        fields.update(version=CloneJobTable.version + 1, updated_at=now)
        count = await _conditional_update(
            self._session,
            CloneJobTable,
            [CloneJobTable.job_id == job_id, CloneJobTable.version == expected_version],
            fields,
        )
        if count == 0:
            raise StateConflict(f"clone job {job_id} changed since version {expected_version}")

        row = await self.get(job_id)
        assert row is not None
        if row.status != previous_status:
            await self._history.record(
                tenant_id=row.tenant_id,
                entity_type=HistoryEntity.CLONE_JOB,
                entity_id=job_id,
                event_type="status",
                from_state=previous_status,
                to_state=row.status,
                job_id=job_id,
                detail=row.error if row.status == CloneJobStatus.FAILED.value else None,
            )
        return row


# ---------------------------------------------------------------------------
# DomainBindingRepository
# ---------------------------------------------------------------------------


class DomainBindingRepository:
    """Custom domain bindings."""

    def __init__(self, session: AsyncSession, history: HistoryRepository | None = None) -> None:
        self._session = session
        self._history = history or HistoryRepository(session)

    async def get(self, binding_id: str) -> DomainBindingTable | None:
        return await self._session.get(DomainBindingTable, binding_id, populate_existing=True)

    async def require(self, binding_id: str) -> DomainBindingTable:
        row = await self.get(binding_id)
        if row is None:
            raise BindingNotFound(f"domain binding {binding_id} does not exist")
        return row

    async def get_live_by_domain(self, domain: str) -> DomainBindingTable | None:
        """Return the non-failed binding currently holding *domain*, if any."""
        stmt = (
            select(DomainBindingTable)
            .where(
                DomainBindingTable.domain == domain,
                DomainBindingTable.state != DomainState.FAILED.value,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str) -> list[DomainBindingTable]:
        stmt = (
            select(DomainBindingTable)
            .where(DomainBindingTable.tenant_id == tenant_id)
            .order_by(DomainBindingTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def has_active(self, tenant_id: str) -> bool:
        stmt = select(func.count()).where(
            DomainBindingTable.tenant_id == tenant_id,
            DomainBindingTable.state == DomainState.ACTIVE.value,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def list_due(self, now: datetime, limit: int = 100) -> list[DomainBindingTable]:
        """Open bindings whose next check time has arrived."""
        stmt = (
            select(DomainBindingTable)
            .where(
                DomainBindingTable.state.in_([s.value for s in OPEN_DOMAIN_STATES]),
                or_(
                    DomainBindingTable.next_check_at.is_(None),
                    DomainBindingTable.next_check_at <= now,
                ),
            )
            .order_by(DomainBindingTable.next_check_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        *,
        tenant_id: str,
        domain: str,
        verification_token: str,
        binding_id: str | None = None,
    ) -> DomainBindingTable | None:
        """Insert a binding in ``pending_dns``.

        Returns ``None`` when a live binding already holds *domain*.
        """
        binding_id = binding_id or _new_id()
        now = datetime.now(UTC)
        inserted = await _dialect_insert_nothing(
            self._session,
            DomainBindingTable,
            {
                "binding_id": binding_id,
                "domain": domain,
                "tenant_id": tenant_id,
                "state": DomainState.PENDING_DNS.value,
                "verification_token": verification_token,
                "retry_count": 0,
                "poll_count": 0,
                "version": 0,
                "next_check_at": now,
                "created_at": now,
                "updated_at": now,
            },
        )
        if not inserted:
            return None
        await self._history.record(
            tenant_id=tenant_id,
            entity_type=HistoryEntity.DOMAIN,
            entity_id=binding_id,
            event_type="created",
            to_state=DomainState.PENDING_DNS,
            detail=domain,
        )
        return await self.require(binding_id)

    async def upsert(self, binding_id: str, *, expected_version: int, **fields: Any) -> DomainBindingTable:
        """Update bookkeeping fields conditioned on *expected_version*.

        State changes go through :meth:`transition` so the lifecycle table is
        always consulted.
        """
        if "state" in fields:
            raise ValueError("use transition() to change a binding's state")
        values = {k: _value(v) for k, v in fields.items()}
        values.update(version=DomainBindingTable.version + 1, updated_at=datetime.now(UTC))
        count = await _conditional_update(
            self._session,
            DomainBindingTable,
            [DomainBindingTable.binding_id == binding_id, DomainBindingTable.version == expected_version],
            values,
        )
        if count == 0:
            await self.require(binding_id)
            raise StateConflict(f"domain binding {binding_id} changed since version {expected_version}")
        return await self.require(binding_id)

    async def transition(
        self,
        binding: DomainBindingTable,
        to_state: DomainState,
        *,
        detail: str | None = None,
        **fields: Any,
    ) -> DomainBindingTable:
        """Move *binding* to *to_state* if it is unchanged since it was read.

        Raises
        ------
        InvalidTransition
            If the move is not in the forward-only lifecycle table.
        StateConflict
            If the binding's version moved on since *binding* was read.
        """
        from_state = DomainState(binding.state)
        if to_state not in DOMAIN_TRANSITIONS[from_state]:
            raise InvalidTransition(
                f"domain binding cannot move from {from_state.value} to {to_state.value}",
                step="domain",
            )
        values = {k: _value(v) for k, v in fields.items()}
        values.update(
            state=to_state.value,
            version=DomainBindingTable.version + 1,
            updated_at=datetime.now(UTC),
        )
        count = await _conditional_update(
            self._session,
            DomainBindingTable,
            [
                DomainBindingTable.binding_id == binding.binding_id,
                DomainBindingTable.version == binding.version,
                DomainBindingTable.state == from_state.value,
            ],
            values,
        )
        if count == 0:
            raise StateConflict(f"domain binding {binding.binding_id} changed concurrently")

        await self._history.record(
            tenant_id=binding.tenant_id,
            entity_type=HistoryEntity.DOMAIN,
            entity_id=binding.binding_id,
            event_type="transition",
            from_state=from_state,
            to_state=to_state,
            detail=detail,
        )
        logger.info(
            "Domain %s (%s): %s -> %s",
            binding.domain,
            binding.binding_id,
            from_state.value,
            to_state.value,
        )
        return await self.require(binding.binding_id)


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Billing status and grace bookkeeping."""

    def __init__(self, session: AsyncSession, history: HistoryRepository | None = None) -> None:
        self._session = session
        self._history = history or HistoryRepository(session)

    async def get(self, tenant_id: str) -> SubscriptionStateTable | None:
        return await self._session.get(SubscriptionStateTable, tenant_id, populate_existing=True)

    async def ensure(self, tenant_id: str) -> SubscriptionStateTable:
        """Return the tenant's subscription record, creating a ``current`` one if absent."""
        await _dialect_insert_nothing(
            self._session,
            SubscriptionStateTable,
            {
                "tenant_id": tenant_id,
                "billing_status": BillingStatus.CURRENT.value,
                "grace_kind": "none",
                "suspension_notified": False,
                "version": 0,
                "updated_at": datetime.now(UTC),
            },
        )
        row = await self.get(tenant_id)
        assert row is not None
        return row

    async def list_overdue(
        self,
        now: datetime,
        *,
        after: tuple[datetime, str] | None = None,
        limit: int = 500,
    ) -> list[SubscriptionStateTable]:
        """Unresolved subscriptions past their grace deadline that still await suspension.

        Tenants already suspended and notified, and deprovisioned tenants,
        are excluded so that they never crowd newly overdue ones out of the
        window.  Rows come back ordered by ``(grace_deadline, tenant_id)``;
        pass the last row's pair as *after* to read the next page.
        """
        criteria = [
            SubscriptionStateTable.billing_status != BillingStatus.CURRENT.value,
            SubscriptionStateTable.grace_deadline.is_not(None),
            SubscriptionStateTable.grace_deadline <= now,
            SubscriptionStateTable.suspension_notified.is_(False),
            TenantTable.state != TenantState.DEPROVISIONED.value,
        ]
        if after is not None:
            deadline, tenant_id = after
            criteria.append(
                or_(
                    SubscriptionStateTable.grace_deadline > deadline,
                    and_(
                        SubscriptionStateTable.grace_deadline == deadline,
                        SubscriptionStateTable.tenant_id > tenant_id,
                    ),
                )
            )
        stmt = (
            select(SubscriptionStateTable)
            .join(TenantTable, TenantTable.tenant_id == SubscriptionStateTable.tenant_id)
            .where(*criteria)
            .order_by(SubscriptionStateTable.grace_deadline.asc(), SubscriptionStateTable.tenant_id.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, tenant_id: str, *, expected_version: int, **fields: Any) -> SubscriptionStateTable:
        """Update fields conditioned on *expected_version*.

        Raises
        ------
        StateConflict
            If the record changed since it was read.
        """
        previous = await self.get(tenant_id)
        if previous is None:
            raise TenantNotFound(f"no subscription record for tenant {tenant_id}")
        previous_status = previous.billing_status

        values = {k: _value(v) for k, v in fields.items()}
        values.update(version=SubscriptionStateTable.version + 1, updated_at=datetime.now(UTC))
        count = await _conditional_update(
            self._session,
            SubscriptionStateTable,
            [
                SubscriptionStateTable.tenant_id == tenant_id,
                SubscriptionStateTable.version == expected_version,
            ],
            values,
        )
        if count == 0:
            raise StateConflict(f"subscription of tenant {tenant_id} changed since version {expected_version}")

        row = await self.get(tenant_id)
        assert row is not None
        if row.billing_status != previous_status:
            await self._history.record(
                tenant_id=tenant_id,
                entity_type=HistoryEntity.SUBSCRIPTION,
                entity_id=tenant_id,
                event_type="billing_status",
                from_state=previous_status,
                to_state=row.billing_status,
            )
        return row

    async def claim_suspension_notice(self, tenant_id: str) -> bool:
        """Flip ``suspension_notified`` from false to true.

        Exactly one caller per suspension sees ``True``.
        """
        count = await _conditional_update(
            self._session,
            SubscriptionStateTable,
            [
                SubscriptionStateTable.tenant_id == tenant_id,
                SubscriptionStateTable.suspension_notified.is_(False),
            ],
            {
                "suspension_notified": True,
                "version": SubscriptionStateTable.version + 1,
                "updated_at": datetime.now(UTC),
            },
        )
        return count > 0


# ---------------------------------------------------------------------------
# TemplateRepository
# ---------------------------------------------------------------------------


class TemplateRepository:
    """Templates and their content items."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, template_id: str) -> TemplateTable | None:
        return await self._session.get(TemplateTable, template_id)

    async def require(self, template_id: str) -> TemplateTable:
        row = await self.get(template_id)
        if row is None:
            raise TemplateNotFound(f"template {template_id} does not exist")
        return row

    async def upsert(
        self,
        *,
        template_id: str,
        name: str,
        canonical_identifier: str,
        canonical_domain: str | None = None,
    ) -> TemplateTable:
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            TemplateTable,
            values={
                "template_id": template_id,
                "name": name,
                "canonical_identifier": canonical_identifier,
                "canonical_domain": canonical_domain,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["template_id"],
            update_columns=["name", "canonical_identifier", "canonical_domain", "updated_at"],
        )
        await self._session.flush()
        row = await self._session.get(TemplateTable, template_id, populate_existing=True)
        assert row is not None
        return row

    async def replace_items(self, template_id: str, items: Iterable[tuple[str, Any]]) -> int:
        """Replace the template's content with *items* (``(key, payload)`` pairs)."""
        await self._session.execute(
            delete(TemplateContentItemTable).where(TemplateContentItemTable.template_id == template_id)
        )
        count = 0
        for position, (item_key, payload) in enumerate(items):
            self._session.add(
                TemplateContentItemTable(
                    template_id=template_id,
                    item_key=item_key,
                    position=position,
                    payload=payload,
                )
            )
            count += 1
        await self._session.flush()
        return count

    async def list_items(self, template_id: str) -> list[TemplateContentItemTable]:
        stmt = (
            select(TemplateContentItemTable)
            .where(TemplateContentItemTable.template_id == template_id)
            .order_by(TemplateContentItemTable.position.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# ContentRepository
# ---------------------------------------------------------------------------


class ContentRepository:
    """Tenant-owned content items."""

    def __init__(self, session: AsyncSession, tenants: TenantRepository | None = None) -> None:
        self._session = session
        self._tenants = tenants or TenantRepository(session)

    async def write_cloned_items(
        self,
        tenant_id: str,
        items: Iterable[dict[str, Any]],
        *,
        source_template_id: str,
        clone_job_id: str,
    ) -> int:
        """Upsert the output of a clone job into the tenant namespace.

        Each item carries ``item_key``, ``position``, ``payload`` and
        ``rewritten``.
        """
        count = 0
        now = datetime.now(UTC)
        for item in items:
            await _dialect_upsert(
                self._session,
                TenantContentItemTable,
                values={
                    "tenant_id": tenant_id,
                    "item_key": item["item_key"],
                    "position": item["position"],
                    "payload": item["payload"],
                    "source_template_id": source_template_id,
                    "clone_job_id": clone_job_id,
                    "rewritten": item["rewritten"],
                    "updated_at": now,
                },
                index_elements=["tenant_id", "item_key"],
                update_columns=[
                    "position",
                    "payload",
                    "source_template_id",
                    "clone_job_id",
                    "rewritten",
                    "updated_at",
                ],
            )
            count += 1
        await self._session.flush()
        return count

    async def list_items(self, tenant_id: str) -> list[TenantContentItemTable]:
        """Read the tenant's content.  Reads are allowed in every state."""
        stmt = (
            select(TenantContentItemTable)
            .where(TenantContentItemTable.tenant_id == tenant_id)
            .order_by(TenantContentItemTable.position.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_items(self, tenant_id: str) -> int:
        stmt = select(func.count()).where(TenantContentItemTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def put_item(self, tenant_id: str, item_key: str, payload: Any) -> TenantContentItemTable:
        """Owner-initiated content write; rejected while content is locked."""
        await self._tenants.assert_content_mutable(tenant_id)
        stmt = select(func.max(TenantContentItemTable.position)).where(TenantContentItemTable.tenant_id == tenant_id)
        last_position = (await self._session.execute(stmt)).scalar_one()
        await _dialect_upsert(
            self._session,
            TenantContentItemTable,
            values={
                "tenant_id": tenant_id,
                "item_key": item_key,
                "position": (last_position or 0) + 1,
                "payload": payload,
                "rewritten": False,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["tenant_id", "item_key"],
            update_columns=["payload", "updated_at"],
        )
        await self._session.flush()
        row = await self._session.get(
            TenantContentItemTable,
            (tenant_id, item_key),
            populate_existing=True,
        )
        assert row is not None
        return row
