"""Tests for the template cloner."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import pytest
from provisioning_engine.container import ProvisioningContainer
from provisioning_engine.errors import CloneAttemptsExhausted, InvalidTransition, ProviderTransient, StateConflict
from provisioning_engine.models import (
    CloneJobStatus,
    CloneOutcome,
    NotificationKind,
    PaymentIntent,
    Tenant,
    TenantState,
)
from provisioning_engine.providers.local import InlineScheduler, InMemoryHostingPanel, LoggingNotifier
from provisioning_engine.state.registry import registry_scope
from provisioning_engine.state.tables import CloneJobTable
from sqlalchemy import update

RegisterFn = Callable[..., Awaitable[Tenant]]

LATER = timedelta(hours=1)


async def _tenant(container: ProvisioningContainer, tenant_id: str = "T1") -> Tenant:
    async with registry_scope(container.session_factory) as registry:
        return Tenant.model_validate(await registry.tenants.require(tenant_id))


async def _content(container: ProvisioningContainer, tenant_id: str = "T1") -> dict[str, object]:
    async with registry_scope(container.session_factory) as registry:
        return {item.item_key: item.payload for item in await registry.content.list_items(tenant_id)}


async def _stall(container: ProvisioningContainer, job_id: str, **values: object) -> None:
    """Backdate a claimed job as if its worker died an hour ago."""
    async with registry_scope(container.session_factory) as registry:
        await registry.session.execute(
            update(CloneJobTable)
            .where(CloneJobTable.job_id == job_id)
            .values(updated_at=datetime.now(UTC) - LATER, **values)
        )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestCloneTemplate:
    @pytest.mark.asyncio
    async def test_clone_rewrites_template_identity(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
        notifier: LoggingNotifier,
    ) -> None:
        await register_tenant("T1", "acme")

        result = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert result.outcome == CloneOutcome.COMPLETED
        assert result.status == CloneJobStatus.COMPLETED
        assert result.attempt_count == 1
        assert result.items_copied == 5
        assert result.items_rewritten == 4

        content = await _content(container)
        assert content["siteurl"] == "https://acme.sites.example.com"
        assert content["blogname"] == "acme"
        assert content["widget_text"] == 'a:1:{s:5:"title";s:7:"Hi acme";}'
        assert content["theme_mods"] == {
            "header": 'a:1:{s:5:"inner";s:14:"s:7:"Hi acme";";}',
            "logo": "/uploads/acme/logo.png",
        }
        assert content["colours"] == {"primary": "blue", "accent": "orange"}

        tenant = await _tenant(container)
        assert tenant.state == TenantState.ACTIVE_PENDING_DOMAIN
        assert tenant.active_clone_job_id is None
        assert tenant.last_error is None
        assert hosting.subdomains == {"acme"}
        assert notifier.kinds_for("T1") == [NotificationKind.PROVISIONED]

    @pytest.mark.asyncio
    async def test_completed_key_returns_cached_result(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
        notifier: LoggingNotifier,
    ) -> None:
        await register_tenant()
        first = await container.cloner.clone_template("TPL-A", "T1", "key-1")
        second = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert second.outcome == CloneOutcome.CACHED
        assert second.job_id == first.job_id
        assert hosting.failures.calls["create_subdomain"] == 1
        assert notifier.kinds_for("T1") == [NotificationKind.PROVISIONED]

    @pytest.mark.asyncio
    async def test_concurrent_calls_clone_once(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
    ) -> None:
        await register_tenant()

        results = await asyncio.gather(
            container.cloner.clone_template("TPL-A", "T1", "key-1"),
            container.cloner.clone_template("TPL-A", "T1", "key-1"),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes.count(CloneOutcome.COMPLETED.value) == 1
        assert {r.job_id for r in results} == {results[0].job_id}
        assert hosting.failures.calls["create_subdomain"] == 1
        assert (await _tenant(container)).state == TenantState.ACTIVE_PENDING_DOMAIN

    @pytest.mark.asyncio
    async def test_existing_subdomain_is_not_recreated(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
    ) -> None:
        hosting.subdomains.add("acme")
        await register_tenant()

        result = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert result.outcome == CloneOutcome.COMPLETED
        assert hosting.failures.calls["create_subdomain"] == 0

    @pytest.mark.asyncio
    async def test_serving_tenant_cannot_start_new_clone(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
    ) -> None:
        await register_tenant()
        await container.cloner.clone_template("TPL-A", "T1", "key-1")

        with pytest.raises(InvalidTransition):
            await container.cloner.clone_template("TPL-A", "T1", "key-2")


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestCloneFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
        scheduler: InlineScheduler,
    ) -> None:
        await register_tenant()
        hosting.failures.fail_next("create_subdomain", ProviderTransient("panel timed out", step="hosting"))

        result = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert result.outcome == CloneOutcome.RETRY_SCHEDULED
        assert result.status == CloneJobStatus.FAILED
        tenant = await _tenant(container)
        assert tenant.state == TenantState.CLONING
        assert tenant.last_error == "hosting: panel timed out"
        assert tenant.active_clone_job_id is None
        assert len(scheduler.pending) == 1
        assert scheduler.pending[0].payload["idempotency_key"] == "key-1"
        assert scheduler.pending[0].run_at > datetime.now(UTC)

        await scheduler.drain(container.dispatcher, now=datetime.now(UTC) + LATER)

        tenant = await _tenant(container)
        assert tenant.state == TenantState.ACTIVE_PENDING_DOMAIN
        assert tenant.last_error is None
        async with registry_scope(container.session_factory) as registry:
            job = await registry.clone_jobs.get_by_key("key-1")
        assert job is not None
        assert job.attempt_count == 2
        assert job.status == CloneJobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_attempt_budget_escalates(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
        notifier: LoggingNotifier,
        scheduler: InlineScheduler,
    ) -> None:
        await register_tenant()
        hosting.failures.fail_next(
            "create_subdomain",
            *(ProviderTransient("panel timed out", step="hosting") for _ in range(3)),
        )

        await container.cloner.clone_template("TPL-A", "T1", "key-1")
        await scheduler.drain(container.dispatcher, now=datetime.now(UTC) + LATER)

        tenant = await _tenant(container)
        assert tenant.state == TenantState.MANUAL_INTERVENTION
        assert tenant.last_error == "hosting: panel timed out"
        assert hosting.failures.calls["create_subdomain"] == 3
        assert notifier.kinds_for("T1") == [
            NotificationKind.OPERATOR_ESCALATION,
            NotificationKind.CLONE_FAILED,
        ]
        assert scheduler.pending == []

        with pytest.raises(CloneAttemptsExhausted):
            await container.cloner.clone_template("TPL-A", "T1", "key-1")

    @pytest.mark.asyncio
    async def test_malformed_content_escalates_immediately(
        self,
        container: ProvisioningContainer,
        template: str,
        notifier: LoggingNotifier,
        scheduler: InlineScheduler,
    ) -> None:
        async with registry_scope(container.session_factory) as registry:
            await registry.templates.upsert(template_id="TPL-BAD", name="Broken", canonical_identifier="tplasite")
            await registry.templates.replace_items("TPL-BAD", [("broken", 's:99:"tplasite";')])
        await container.orchestrator.register_payment_intent(
            PaymentIntent(tenant_intent_id="T9", owner_account_id="o", template_id="TPL-BAD", subdomain="bad")
        )

        result = await container.cloner.clone_template("TPL-BAD", "T9", "key-9")

        assert result.outcome == CloneOutcome.ESCALATED
        assert result.attempt_count == 1
        assert result.error is not None and result.error.startswith("rewrite:")
        assert (await _tenant(container, "T9")).state == TenantState.MANUAL_INTERVENTION
        assert await _content(container, "T9") == {}
        assert scheduler.pending == []
        assert NotificationKind.OPERATOR_ESCALATION in notifier.kinds_for("T9")

    @pytest.mark.asyncio
    async def test_deprovisioned_tenant_discards_clone(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
    ) -> None:
        await register_tenant()
        await container.orchestrator.deprovision("T1")

        result = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert result.outcome == CloneOutcome.DISCARDED
        assert await _content(container) == {}
        assert hosting.subdomains == set()
        assert (await _tenant(container)).state == TenantState.DEPROVISIONED


# ---------------------------------------------------------------------------
# Manual retry
# ---------------------------------------------------------------------------


class TestRequeue:
    @pytest.mark.asyncio
    async def test_requeue_restarts_with_fresh_budget(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        hosting: InMemoryHostingPanel,
        scheduler: InlineScheduler,
    ) -> None:
        await register_tenant()
        hosting.failures.fail_next(
            "create_subdomain",
            *(ProviderTransient("panel timed out", step="hosting") for _ in range(3)),
        )
        await container.cloner.clone_template("TPL-A", "T1", "key-1")
        await scheduler.drain(container.dispatcher, now=datetime.now(UTC) + LATER)
        assert (await _tenant(container)).state == TenantState.MANUAL_INTERVENTION

        result = await container.cloner.requeue_for_manual_retry("T1")
        assert result.outcome == CloneOutcome.RETRY_SCHEDULED
        assert result.attempt_count == 0
        assert (await _tenant(container)).state == TenantState.CLONING

        await scheduler.drain(container.dispatcher)

        assert (await _tenant(container)).state == TenantState.ACTIVE_PENDING_DOMAIN
        assert (await _content(container))["blogname"] == "acme"

    @pytest.mark.asyncio
    async def test_requeue_requires_manual_intervention(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
    ) -> None:
        await register_tenant()
        with pytest.raises(InvalidTransition):
            await container.cloner.requeue_for_manual_retry("T1")


# ---------------------------------------------------------------------------
# Abandoned workers
# ---------------------------------------------------------------------------


class TestAbandonedClone:
    @pytest.mark.asyncio
    async def test_live_claim_reports_in_progress(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
    ) -> None:
        await register_tenant()
        attempt = await container.cloner._claim("TPL-A", "T1", "key-1")

        result = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert result.outcome == CloneOutcome.IN_PROGRESS
        assert await container.cloner.reclaim_abandoned(attempt.job_id) is None
        assert (await _tenant(container)).active_clone_job_id == attempt.job_id

    @pytest.mark.asyncio
    async def test_dead_worker_job_is_reclaimed_and_completed(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        notifier: LoggingNotifier,
        scheduler: InlineScheduler,
    ) -> None:
        await register_tenant()
        attempt = await container.cloner._claim("TPL-A", "T1", "key-1")
        await _stall(container, attempt.job_id)

        result = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert result.outcome == CloneOutcome.COMPLETED
        assert result.job_id == attempt.job_id
        assert result.attempt_count == 2
        tenant = await _tenant(container)
        assert tenant.state == TenantState.ACTIVE_PENDING_DOMAIN
        assert tenant.active_clone_job_id is None
        assert (await _content(container))["blogname"] == "acme"
        assert notifier.kinds_for("T1") == [NotificationKind.PROVISIONED]

        # The retry queued by the reclaim finds the key already done.
        await scheduler.drain(container.dispatcher, now=datetime.now(UTC) + LATER)
        assert (await _tenant(container)).state == TenantState.ACTIVE_PENDING_DOMAIN

    @pytest.mark.asyncio
    async def test_dead_worker_on_last_attempt_escalates(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        notifier: LoggingNotifier,
        scheduler: InlineScheduler,
    ) -> None:
        await register_tenant()
        attempt = await container.cloner._claim("TPL-A", "T1", "key-1")
        await _stall(container, attempt.job_id, attempt_count=3)

        result = await container.cloner.clone_template("TPL-A", "T1", "key-1")

        assert result.outcome == CloneOutcome.ESCALATED
        assert result.status == CloneJobStatus.FAILED
        tenant = await _tenant(container)
        assert tenant.state == TenantState.MANUAL_INTERVENTION
        assert tenant.active_clone_job_id is None
        assert tenant.last_error is not None and tenant.last_error.startswith("clone:")
        assert notifier.kinds_for("T1") == [
            NotificationKind.OPERATOR_ESCALATION,
            NotificationKind.CLONE_FAILED,
        ]
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_resumed_worker_cannot_overwrite_reclaimed_job(
        self,
        container: ProvisioningContainer,
        register_tenant: RegisterFn,
        scheduler: InlineScheduler,
    ) -> None:
        cloner = container.cloner
        await register_tenant()
        attempt = await cloner._claim("TPL-A", "T1", "key-1")
        items, replacements = await cloner._copy(attempt)
        await _stall(container, attempt.job_id)

        reclaimed = await cloner.reclaim_abandoned(attempt.job_id)
        assert reclaimed is not None
        assert reclaimed.outcome == CloneOutcome.RETRY_SCHEDULED
        assert (await _tenant(container)).active_clone_job_id is None

        with pytest.raises(StateConflict):
            await cloner._rewrite(attempt, items, replacements)
        late = await cloner._finish(attempt, items, len(items))
        assert late.status == CloneJobStatus.FAILED
        assert await _content(container) == {}
        assert (await _tenant(container)).state == TenantState.CLONING

        await scheduler.drain(container.dispatcher, now=datetime.now(UTC) + LATER)

        async with registry_scope(container.session_factory) as registry:
            job = await registry.clone_jobs.get_by_key("key-1")
        assert job is not None
        assert job.status == CloneJobStatus.COMPLETED.value
        assert job.attempt_count == 2
        assert (await _tenant(container)).state == TenantState.ACTIVE_PENDING_DOMAIN
