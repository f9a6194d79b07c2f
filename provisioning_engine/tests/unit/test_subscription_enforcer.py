"""Tests for subscription enforcement."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import pytest
from provisioning_engine.container import ProvisioningContainer
from provisioning_engine.errors import ContentLocked
from provisioning_engine.models import (
    BillingStatus,
    EnforcementAction,
    NotificationKind,
    SubscriptionState,
    Tenant,
    TenantState,
)
from provisioning_engine.providers.local import InlineScheduler, LoggingNotifier
from provisioning_engine.state.registry import registry_scope

TenantFn = Callable[..., Awaitable[Tenant]]

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def day(n: float) -> datetime:
    return T0 + timedelta(days=n)


async def _state(container: ProvisioningContainer, tenant_id: str = "T1") -> TenantState:
    async with registry_scope(container.session_factory) as registry:
        return TenantState((await registry.tenants.require(tenant_id)).state)


async def _subscription(container: ProvisioningContainer, tenant_id: str = "T1") -> SubscriptionState:
    async with registry_scope(container.session_factory) as registry:
        return SubscriptionState.model_validate(await registry.subscriptions.ensure(tenant_id))


async def _content_count(container: ProvisioningContainer, tenant_id: str = "T1") -> int:
    async with registry_scope(container.session_factory) as registry:
        return await registry.content.count_items(tenant_id)


# ---------------------------------------------------------------------------
# Billing grace
# ---------------------------------------------------------------------------


class TestBillingGrace:
    @pytest.mark.asyncio
    async def test_payment_failure_opens_grace_and_resume_restores(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
        notifier: LoggingNotifier,
    ) -> None:
        await provision_tenant()
        items_before = await _content_count(container)

        started = await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))
        assert started.action == EnforcementAction.BILLING_GRACE_STARTED
        assert started.tenant_state == TenantState.GRACE_BILLING.value
        assert started.grace_deadline == day(7)
        assert started.notified

        # The site keeps serving during billing grace.
        async with registry_scope(container.session_factory) as registry:
            await registry.content.put_item("T1", "blogname", "Acme Salon")

        assert (await container.enforcer.sweep(day(6))) == []

        resumed = await container.enforcer.record_billing_status("T1", BillingStatus.CURRENT, now=day(6))
        assert resumed.action == EnforcementAction.GRACE_CLEARED
        assert await _state(container) == TenantState.ACTIVE_PENDING_DOMAIN
        assert await _content_count(container) == items_before

        subscription = await _subscription(container)
        assert subscription.billing_status == BillingStatus.CURRENT
        assert subscription.grace_deadline is None
        assert subscription.resume_state is None
        assert notifier.kinds_for("T1") == [NotificationKind.PROVISIONED, NotificationKind.BILLING_GRACE_STARTED]

    @pytest.mark.asyncio
    async def test_repeated_status_keeps_deadline(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
    ) -> None:
        await provision_tenant()
        await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))

        again = await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(3))

        assert again.action == EnforcementAction.NONE
        assert again.grace_deadline == day(7)
        assert (await _subscription(container)).grace_deadline == day(7)

    @pytest.mark.asyncio
    async def test_expired_grace_suspends_once(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
        notifier: LoggingNotifier,
    ) -> None:
        await provision_tenant()
        items_before = await _content_count(container)
        await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))

        first = await container.enforcer.sweep(day(8))
        second = await container.enforcer.sweep(day(9))

        assert [r.action for r in first] == [EnforcementAction.SUSPENDED]
        assert first[0].notified
        assert second == []
        assert await _state(container) == TenantState.SUSPENDED
        assert notifier.kinds_for("T1").count(NotificationKind.SUSPENDED) == 1
        assert await _content_count(container) == items_before

    @pytest.mark.asyncio
    async def test_no_suspension_before_deadline(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
    ) -> None:
        await provision_tenant()
        await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))

        assert await container.enforcer.sweep(day(7) - timedelta(seconds=1)) == []
        assert await _state(container) == TenantState.GRACE_BILLING


# ---------------------------------------------------------------------------
# Cancellation grace
# ---------------------------------------------------------------------------


class TestCancellationGrace:
    @pytest.mark.asyncio
    async def test_cancellation_locks_content_then_suspends(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
        notifier: LoggingNotifier,
    ) -> None:
        await provision_tenant()

        started = await container.enforcer.record_billing_status("T1", BillingStatus.CANCELLED, now=day(0))
        assert started.action == EnforcementAction.CANCELLATION_GRACE_STARTED
        assert started.grace_deadline == day(30)
        assert await _state(container) == TenantState.GRACE_CANCELLED

        async with registry_scope(container.session_factory) as registry:
            with pytest.raises(ContentLocked):
                await registry.content.put_item("T1", "blogname", "Changed")
            assert await registry.content.count_items("T1") > 0

        assert await container.enforcer.sweep(day(29)) == []
        suspended = await container.enforcer.sweep(day(31))
        assert [r.action for r in suspended] == [EnforcementAction.SUSPENDED]
        assert await container.enforcer.sweep(day(32)) == []
        assert notifier.kinds_for("T1").count(NotificationKind.SUSPENDED) == 1

    @pytest.mark.asyncio
    async def test_cancellation_overrides_billing_grace(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
    ) -> None:
        await provision_tenant()
        await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))
        cancelled = await container.enforcer.record_billing_status("T1", BillingStatus.CANCELLED, now=day(2))

        assert cancelled.tenant_state == TenantState.GRACE_CANCELLED.value
        assert cancelled.grace_deadline == day(32)

        ignored = await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(3))
        assert ignored.action == EnforcementAction.NONE
        assert (await _subscription(container)).grace_deadline == day(32)

        resumed = await container.enforcer.record_billing_status("T1", BillingStatus.CURRENT, now=day(4))
        assert resumed.tenant_state == TenantState.ACTIVE_PENDING_DOMAIN.value


# ---------------------------------------------------------------------------
# Reactivation
# ---------------------------------------------------------------------------


class TestReactivation:
    @pytest.mark.asyncio
    async def test_suspended_tenant_reactivates_with_content(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
        notifier: LoggingNotifier,
    ) -> None:
        await provision_tenant()
        items_before = await _content_count(container)
        await container.enforcer.record_billing_status("T1", BillingStatus.CANCELLED, now=day(0))
        await container.enforcer.sweep(day(31))

        result = await container.enforcer.record_billing_status("T1", BillingStatus.CURRENT, now=day(40))

        assert result.action == EnforcementAction.REACTIVATED
        assert result.notified
        assert await _state(container) == TenantState.ACTIVE_PENDING_DOMAIN
        assert await _content_count(container) == items_before
        assert notifier.kinds_for("T1")[-1] == NotificationKind.REACTIVATED

    @pytest.mark.asyncio
    async def test_reactivation_prefers_active_domain(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
        scheduler: InlineScheduler,
    ) -> None:
        await provision_tenant()
        await container.orchestrator.request_domain("T1", "shop.acme.com")
        await scheduler.drain(container.dispatcher)
        assert await _state(container) == TenantState.ACTIVE

        await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))
        await container.enforcer.sweep(day(8))
        await container.enforcer.record_billing_status("T1", BillingStatus.CURRENT, now=day(9))

        assert await _state(container) == TenantState.ACTIVE

    @pytest.mark.asyncio
    async def test_unprovisioned_tenant_left_for_operator(
        self,
        container: ProvisioningContainer,
        register_tenant: TenantFn,
    ) -> None:
        await register_tenant()
        await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))
        await container.enforcer.sweep(day(8))
        assert await _state(container) == TenantState.SUSPENDED

        result = await container.enforcer.record_billing_status("T1", BillingStatus.CURRENT, now=day(9))

        assert result.action == EnforcementAction.GRACE_CLEARED
        assert result.tenant_state == TenantState.SUSPENDED.value

    @pytest.mark.asyncio
    async def test_deprovisioned_tenant_ignored(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
    ) -> None:
        await provision_tenant()
        await container.orchestrator.deprovision("T1")

        result = await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))

        assert result.action == EnforcementAction.NONE
        assert await _state(container) == TenantState.DEPROVISIONED


# ---------------------------------------------------------------------------
# Sweep paging
# ---------------------------------------------------------------------------


class TestSweepBacklog:
    @pytest.mark.asyncio
    async def test_suspended_backlog_does_not_hide_new_overdue_tenant(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
        register_tenant: TenantFn,
        notifier: LoggingNotifier,
    ) -> None:
        # More long-suspended tenants than one page holds, all with older deadlines.
        for n in range(5):
            await register_tenant(f"OLD{n}", f"old{n}")
            await container.enforcer.record_billing_status(f"OLD{n}", BillingStatus.PAST_DUE, now=day(-100))
        assert len(await container.enforcer.sweep(day(-90), batch_size=2)) == 5

        await provision_tenant("NEW", "newsite")
        await container.enforcer.record_billing_status("NEW", BillingStatus.PAST_DUE, now=day(0))

        results = await container.enforcer.sweep(day(8), batch_size=2)

        assert [(r.tenant_id, r.action) for r in results] == [("NEW", EnforcementAction.SUSPENDED)]
        assert await _state(container, "NEW") == TenantState.SUSPENDED
        assert notifier.kinds_for("NEW").count(NotificationKind.SUSPENDED) == 1
        for n in range(5):
            assert notifier.kinds_for(f"OLD{n}").count(NotificationKind.SUSPENDED) == 1

    @pytest.mark.asyncio
    async def test_overdue_tenants_beyond_one_page_all_suspended(
        self,
        container: ProvisioningContainer,
        register_tenant: TenantFn,
    ) -> None:
        for n in range(5):
            await register_tenant(f"T{n}", f"site{n}")
            await container.enforcer.record_billing_status(f"T{n}", BillingStatus.PAST_DUE, now=day(0))

        results = await container.enforcer.sweep(day(8), batch_size=2)

        assert sorted(r.tenant_id for r in results) == [f"T{n}" for n in range(5)]
        for n in range(5):
            assert await _state(container, f"T{n}") == TenantState.SUSPENDED

    @pytest.mark.asyncio
    async def test_deprovisioned_tenant_with_open_grace_skipped(
        self,
        container: ProvisioningContainer,
        provision_tenant: TenantFn,
    ) -> None:
        await provision_tenant()
        await container.enforcer.record_billing_status("T1", BillingStatus.PAST_DUE, now=day(0))
        await container.orchestrator.deprovision("T1")

        async with registry_scope(container.session_factory) as registry:
            overdue = await registry.subscriptions.list_overdue(day(8))

        assert overdue == []
        assert await container.enforcer.sweep(day(8)) == []
        assert await _state(container) == TenantState.DEPROVISIONED
