"""Subscription enforcement: grace periods, suspension and reactivation.

Billing status changes arrive through :meth:`SubscriptionEnforcer.record_billing_status`.
A failed payment opens a billing grace in which the site keeps working; a
cancellation opens a longer grace in which content becomes read-only.  The
periodic :meth:`SubscriptionEnforcer.sweep` suspends tenants whose grace ran
out.  No content is deleted at any point: suspension only gates access, and
a resumed payment restores the state the tenant had before its grace began.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from provisioning_engine.config import Settings
from provisioning_engine.errors import StateConflict
from provisioning_engine.jobs.retry import RetryConfig, async_retry_with_backoff
from provisioning_engine.models.events import NotificationKind
from provisioning_engine.models.subscription import (
    BillingStatus,
    EnforcementAction,
    EnforcementResult,
    GraceKind,
)
from provisioning_engine.models.tenant import SERVING_STATES, TenantState
from provisioning_engine.providers.base import Notifier
from provisioning_engine.state.registry import Registry, SessionFactory, registry_scope
from provisioning_engine.state.tables import SubscriptionStateTable
from provisioning_engine.telemetry.metrics import ENFORCER_ACTIONS_TOTAL

logger = logging.getLogger(__name__)

_GRACE_STATES = frozenset({TenantState.GRACE_BILLING, TenantState.GRACE_CANCELLED})

_NOTIFICATIONS = {
    EnforcementAction.BILLING_GRACE_STARTED: NotificationKind.BILLING_GRACE_STARTED,
    EnforcementAction.CANCELLATION_GRACE_STARTED: NotificationKind.CANCELLATION_GRACE_STARTED,
    EnforcementAction.SUSPENDED: NotificationKind.SUSPENDED,
    EnforcementAction.REACTIVATED: NotificationKind.REACTIVATED,
}


@dataclass
class _Outcome:
    action: EnforcementAction
    tenant_state: str | None = None
    grace_deadline: datetime | None = None
    notify: bool = False
    detail: dict[str, Any] = field(default_factory=dict)


class SubscriptionEnforcer:
    """Applies billing status to tenant lifecycle state.

    Parameters
    ----------
    session_factory:
        Produces a fresh ``AsyncSession`` per transaction.
    notifier:
        Owner notifications for grace, suspension and reactivation.
    settings:
        Grace lengths in days.
    contention_retry:
        Backoff used when a concurrent writer moves the tenant or its
        subscription between read and write.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        notifier: Notifier,
        settings: Settings,
        contention_retry: RetryConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._settings = settings
        self._retry = contention_retry or RetryConfig(max_retries=3, base_delay=0.05, max_delay=1.0)

    # ------------------------------------------------------------------
    # Billing status changes
    # ------------------------------------------------------------------

    async def record_billing_status(
        self,
        tenant_id: str,
        status: BillingStatus,
        now: datetime | None = None,
    ) -> EnforcementResult:
        """Apply a new billing *status* for *tenant_id*.

        Repeating the current status changes nothing, so grace deadlines
        never move.
        """
        now = now or datetime.now(UTC)
        outcome: _Outcome = await async_retry_with_backoff(
            lambda: self._apply_status(tenant_id, BillingStatus(status), now),
            self._retry,
            retryable_exceptions=(StateConflict,),
        )
        return await self._finish(tenant_id, outcome)

    async def _apply_status(self, tenant_id: str, status: BillingStatus, now: datetime) -> _Outcome:
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(tenant_id)
            subscription = await registry.subscriptions.ensure(tenant_id)
            state = TenantState(tenant.state)

            if state == TenantState.DEPROVISIONED:
                return _Outcome(EnforcementAction.NONE, tenant_state=state.value)
            if BillingStatus(subscription.billing_status) == status:
                return _Outcome(
                    EnforcementAction.NONE,
                    tenant_state=state.value,
                    grace_deadline=subscription.grace_deadline,
                )

            if status == BillingStatus.PAST_DUE:
                return await self._start_billing_grace(registry, subscription, state, now)
            if status == BillingStatus.CANCELLED:
                return await self._start_cancellation_grace(registry, subscription, state, now)
            return await self._resume(registry, subscription, state)

    async def _start_billing_grace(
        self,
        registry: Registry,
        subscription: SubscriptionStateTable,
        state: TenantState,
        now: datetime,
    ) -> _Outcome:
        tenant_id = subscription.tenant_id
        if GraceKind(subscription.grace_kind) == GraceKind.CANCELLATION:
            # A cancelled subscription stays on its (stricter) cancellation grace.
            logger.info("Tenant %s is cancelled; ignoring past_due", tenant_id)
            return _Outcome(EnforcementAction.NONE, tenant_state=state.value, grace_deadline=subscription.grace_deadline)

        deadline = now + timedelta(days=self._settings.billing_grace_days)
        await registry.subscriptions.update(
            tenant_id,
            expected_version=subscription.version,
            billing_status=BillingStatus.PAST_DUE,
            grace_kind=GraceKind.BILLING,
            grace_started_at=now,
            grace_deadline=deadline,
            resume_state=state if state in SERVING_STATES else subscription.resume_state,
            suspension_notified=False,
        )
        if state in SERVING_STATES:
            await registry.tenants.transition(
                tenant_id,
                state,
                TenantState.GRACE_BILLING,
                detail=f"payment failed; grace until {deadline.isoformat()}",
            )
            state = TenantState.GRACE_BILLING
        return _Outcome(
            EnforcementAction.BILLING_GRACE_STARTED,
            tenant_state=state.value,
            grace_deadline=deadline,
            notify=True,
            detail={"grace_deadline": deadline.isoformat()},
        )

    async def _start_cancellation_grace(
        self,
        registry: Registry,
        subscription: SubscriptionStateTable,
        state: TenantState,
        now: datetime,
    ) -> _Outcome:
        tenant_id = subscription.tenant_id
        deadline = now + timedelta(days=self._settings.cancellation_grace_days)
        resume_state = state if state in SERVING_STATES else subscription.resume_state
        await registry.subscriptions.update(
            tenant_id,
            expected_version=subscription.version,
            billing_status=BillingStatus.CANCELLED,
            grace_kind=GraceKind.CANCELLATION,
            grace_started_at=now,
            grace_deadline=deadline,
            resume_state=resume_state,
            suspension_notified=False if state != TenantState.SUSPENDED else subscription.suspension_notified,
        )
        if state in SERVING_STATES or state == TenantState.GRACE_BILLING:
            await registry.tenants.transition(
                tenant_id,
                state,
                TenantState.GRACE_CANCELLED,
                detail=f"subscription cancelled; content read-only until {deadline.isoformat()}",
            )
            state = TenantState.GRACE_CANCELLED
        return _Outcome(
            EnforcementAction.CANCELLATION_GRACE_STARTED,
            tenant_state=state.value,
            grace_deadline=deadline,
            notify=True,
            detail={"grace_deadline": deadline.isoformat()},
        )

    async def _resume(
        self,
        registry: Registry,
        subscription: SubscriptionStateTable,
        state: TenantState,
    ) -> _Outcome:
        tenant_id = subscription.tenant_id
        action = EnforcementAction.GRACE_CLEARED if subscription.grace_kind != GraceKind.NONE.value else EnforcementAction.NONE
        notify = False

        if state in _GRACE_STATES or state == TenantState.SUSPENDED:
            target = await self._resume_target(registry, subscription)
            if target is None:
                logger.warning(
                    "Tenant %s paid but has nothing provisioned to resume; left %s for an operator",
                    tenant_id,
                    state.value,
                )
            else:
                await registry.tenants.transition(tenant_id, state, target, detail="payment resumed")
                if state == TenantState.SUSPENDED:
                    action = EnforcementAction.REACTIVATED
                    notify = True
                state = target

        await registry.subscriptions.update(
            tenant_id,
            expected_version=subscription.version,
            billing_status=BillingStatus.CURRENT,
            grace_kind=GraceKind.NONE,
            grace_started_at=None,
            grace_deadline=None,
            resume_state=None,
            suspension_notified=False,
        )
        return _Outcome(action, tenant_state=state.value, notify=notify)

    async def _resume_target(self, registry: Registry, subscription: SubscriptionStateTable) -> TenantState | None:
        """State to return to once payment resumes, or ``None`` if unknown."""
        tenant_id = subscription.tenant_id
        has_domain = await registry.domains.has_active(tenant_id)
        if subscription.resume_state is not None:
            target = TenantState(subscription.resume_state)
            if target == TenantState.ACTIVE_PENDING_DOMAIN and has_domain:
                return TenantState.ACTIVE
            return target
        if has_domain:
            return TenantState.ACTIVE
        if await registry.clone_jobs.has_completed(tenant_id):
            return TenantState.ACTIVE_PENDING_DOMAIN
        return None

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None, *, batch_size: int = 500) -> list[EnforcementResult]:
        """Suspend every tenant whose grace deadline has passed.

        Overdue subscriptions are read page by page, *batch_size* at a time.
        Each suspension notifies the owner exactly once, however many sweeps
        run concurrently.
        """
        now = now or datetime.now(UTC)
        results: list[EnforcementResult] = []
        overdue = 0
        after: tuple[datetime, str] | None = None
        while True:
            async with registry_scope(self._session_factory) as registry:
                page = [
                    (row.grace_deadline, row.tenant_id)
                    for row in await registry.subscriptions.list_overdue(now, after=after, limit=batch_size)
                ]
            if not page:
                break
            overdue += len(page)
            after = page[-1]

            for _, tenant_id in page:
                try:
                    outcome: _Outcome = await async_retry_with_backoff(
                        lambda tenant_id=tenant_id: self._suspend_if_due(tenant_id, now),
                        self._retry,
                        retryable_exceptions=(StateConflict,),
                    )
                except Exception:
                    logger.exception("Enforcer sweep failed for tenant %s", tenant_id)
                    continue
                if outcome.action != EnforcementAction.NONE:
                    results.append(await self._finish(tenant_id, outcome))
            if len(page) < batch_size:
                break

        if overdue:
            logger.info("Enforcer sweep: %d overdue, %d acted on", overdue, len(results))
        return results

    async def _suspend_if_due(self, tenant_id: str, now: datetime) -> _Outcome:
        async with registry_scope(self._session_factory) as registry:
            subscription = await registry.subscriptions.get(tenant_id)
            tenant = await registry.tenants.require(tenant_id)
            state = TenantState(tenant.state)
            if (
                subscription is None
                or subscription.billing_status == BillingStatus.CURRENT.value
                or subscription.grace_deadline is None
                or subscription.grace_deadline > now
                or state == TenantState.DEPROVISIONED
            ):
                return _Outcome(EnforcementAction.NONE, tenant_state=state.value)

            if state != TenantState.SUSPENDED:
                await registry.tenants.transition(
                    tenant_id,
                    state,
                    TenantState.SUSPENDED,
                    detail=f"{subscription.grace_kind} grace expired",
                )
            if not await registry.subscriptions.claim_suspension_notice(tenant_id):
                return _Outcome(EnforcementAction.NONE, tenant_state=TenantState.SUSPENDED.value)

            logger.info("Tenant %s suspended after %s grace", tenant_id, subscription.grace_kind)
            return _Outcome(
                EnforcementAction.SUSPENDED,
                tenant_state=TenantState.SUSPENDED.value,
                grace_deadline=subscription.grace_deadline,
                notify=True,
                detail={"grace_kind": subscription.grace_kind},
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _finish(self, tenant_id: str, outcome: _Outcome) -> EnforcementResult:
        ENFORCER_ACTIONS_TOTAL.labels(action=outcome.action.value).inc()
        notified = False
        if outcome.notify:
            kind = _NOTIFICATIONS[outcome.action]
            try:
                await self._notifier.notify(tenant_id, kind, outcome.detail)
                notified = True
            except Exception:
                logger.exception("Notification %s for tenant %s failed", kind.value, tenant_id)
        return EnforcementResult(
            tenant_id=tenant_id,
            action=outcome.action,
            tenant_state=outcome.tenant_state,
            grace_deadline=outcome.grace_deadline,
            notified=notified,
        )
