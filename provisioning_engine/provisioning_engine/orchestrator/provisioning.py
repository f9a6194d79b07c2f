"""Provisioning orchestrator.

The entry point for billing events and owner requests.  Nothing here waits
on a clone or a DNS provider: the orchestrator records intent in the
registry, hands the slow work to the scheduler and returns.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from provisioning_engine.cloner.template_cloner import TemplateCloner
from provisioning_engine.config import Settings
from provisioning_engine.domains.lifecycle import DomainLifecycleManager
from provisioning_engine.errors import StateConflict
from provisioning_engine.jobs.retry import RetryConfig, async_retry_with_backoff
from provisioning_engine.models.clone_job import IN_FLIGHT_STATUSES, CloneJobStatus, derive_idempotency_key
from provisioning_engine.models.domain import OPEN_DOMAIN_STATES, DomainBinding, DomainErrorCode, DomainState
from provisioning_engine.models.events import PaymentConfirmed
from provisioning_engine.models.jobs import JobRequest
from provisioning_engine.models.tenant import PaymentIntent, Tenant, TenantState
from provisioning_engine.providers.base import Scheduler
from provisioning_engine.state.registry import SessionFactory, registry_scope
from provisioning_engine.telemetry.metrics import PAYMENT_EVENTS_TOTAL

logger = logging.getLogger(__name__)

# Payment confirmations for tenants in these states never start a clone.
_NO_CLONE_STATES = frozenset({TenantState.MANUAL_INTERVENTION, TenantState.DEPROVISIONED})

_CONTENTION_RETRY = RetryConfig(max_retries=3, base_delay=0.05, max_delay=1.0)


class ProvisioningOrchestrator:
    """Turns payment events and owner requests into registry state and jobs."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        cloner: TemplateCloner,
        domains: DomainLifecycleManager,
        scheduler: Scheduler,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._cloner = cloner
        self._domains = domains
        self._scheduler = scheduler
        self._settings = settings

    async def register_payment_intent(self, intent: PaymentIntent) -> Tenant:
        """Create the tenant for *intent* in ``pending``.

        Registering the same intent twice returns the existing tenant.

        Raises
        ------
        TemplateNotFound
            If the intent names an unknown template.
        StateConflict
            If the intent id or subdomain is already used by a different
            tenant.
        """
        async with registry_scope(self._session_factory) as registry:
            existing = await registry.tenants.get(intent.tenant_intent_id)
            if existing is not None:
                if (existing.owner_account_id, existing.template_id, existing.subdomain) != (
                    intent.owner_account_id,
                    intent.template_id,
                    intent.subdomain,
                ):
                    raise StateConflict(
                        f"payment intent {intent.tenant_intent_id} was already registered with different details",
                    )
                return Tenant.model_validate(existing)

            await registry.templates.require(intent.template_id)
            tenant = await registry.tenants.create(
                tenant_id=intent.tenant_intent_id,
                owner_account_id=intent.owner_account_id,
                template_id=intent.template_id,
                subdomain=intent.subdomain,
            )
            await registry.subscriptions.ensure(tenant.tenant_id)
            return Tenant.model_validate(tenant)

    async def handle_payment_confirmed(self, event: PaymentConfirmed) -> str:
        """React to a confirmed payment and return the decision taken.

        Decisions
        ---------
        ``renewal``
            The tenant already has a completed clone.
        ``in_flight``
            A clone is queued, running or waiting for its retry.
        ``ignored``
            The tenant awaits an operator or has been deprovisioned.
        ``scheduled``
            A clone job was handed to the scheduler.
        """
        tenant_id = event.tenant_intent_id
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(tenant_id)
            state = TenantState(tenant.state)
            latest = await registry.clone_jobs.latest_for_tenant(tenant_id)

            if await registry.clone_jobs.has_completed(tenant_id):
                decision = "renewal"
            elif state == TenantState.CLONING or tenant.active_clone_job_id or (
                latest is not None and CloneJobStatus(latest.status) in IN_FLIGHT_STATUSES
            ):
                decision = "in_flight"
            elif state in _NO_CLONE_STATES:
                decision = "ignored"
            else:
                decision = "scheduled"
                if tenant.subscription_id != event.subscription_id:
                    await registry.tenants.attach_subscription(tenant_id, event.subscription_id)
                request = JobRequest.clone(
                    template_id=tenant.template_id,
                    tenant_id=tenant_id,
                    idempotency_key=derive_idempotency_key(tenant_id, event.subscription_id),
                )

        PAYMENT_EVENTS_TOTAL.labels(decision=decision).inc()
        if decision == "scheduled":
            await self._scheduler.schedule(request)
            logger.info("Payment confirmed for tenant %s; clone scheduled", tenant_id)
        else:
            logger.info("Payment confirmed for tenant %s; %s, nothing to do", tenant_id, decision)
        return decision

    async def recover_stalled_clones(self, now: datetime | None = None, *, limit: int = 100) -> int:
        """Re-schedule clone work that the scheduler may have lost.

        Covers paid tenants still ``pending`` with no clone job, failed
        jobs whose retry time has passed, and claimed jobs whose worker
        let the lease lapse (those are failed through the cloner, which
        schedules their retry or escalates them).  Returns the number of
        jobs acted on; duplicates are absorbed by the idempotency key.
        """
        now = now or datetime.now(UTC)
        requests: list[JobRequest] = []
        stale_before = now - timedelta(seconds=self._settings.clone_lease_seconds)
        async with registry_scope(self._session_factory) as registry:
            abandoned = [job.job_id for job in await registry.clone_jobs.list_abandoned(stale_before, limit=limit)]
            for tenant in await registry.tenants.list_by_state(TenantState.PENDING):
                if tenant.subscription_id is None:
                    continue
                if await registry.clone_jobs.latest_for_tenant(tenant.tenant_id) is not None:
                    continue
                requests.append(
                    JobRequest.clone(
                        template_id=tenant.template_id,
                        tenant_id=tenant.tenant_id,
                        idempotency_key=derive_idempotency_key(tenant.tenant_id, tenant.subscription_id),
                    )
                )
            for job in await registry.clone_jobs.list_retry_due(now, limit=limit):
                requests.append(
                    JobRequest.clone(
                        template_id=job.template_id,
                        tenant_id=job.tenant_id,
                        idempotency_key=job.idempotency_key,
                    )
                )

        reclaimed = 0
        for job_id in abandoned:
            if await self._cloner.reclaim_abandoned(job_id, now=now) is not None:
                reclaimed += 1
        if reclaimed:
            logger.info("Reclaimed %d abandoned clone job(s)", reclaimed)

        for request in requests[:limit]:
            await self._scheduler.schedule(request)
        if requests:
            logger.info("Re-scheduled %d stalled clone job(s)", min(len(requests), limit))
        return reclaimed + min(len(requests), limit)

    async def request_domain(self, tenant_id: str, domain: str) -> DomainBinding:
        """Bind a custom domain; routing only switches once the clone is done."""
        binding = await self._domains.add_domain(tenant_id, domain)
        if binding.state in OPEN_DOMAIN_STATES:
            await self._scheduler.schedule(JobRequest.advance(binding_id=binding.binding_id))
        return binding

    async def deprovision(self, tenant_id: str, *, reason: str | None = None) -> Tenant:
        """Move *tenant_id* to ``deprovisioned`` and close its open bindings.

        A clone still running finishes on its own and its output is
        discarded.  Deprovisioning an already deprovisioned tenant is a
        no-op.
        """
        return await async_retry_with_backoff(
            lambda: self._deprovision_once(tenant_id, reason),
            _CONTENTION_RETRY,
            retryable_exceptions=(StateConflict,),
        )

    async def _deprovision_once(self, tenant_id: str, reason: str | None) -> Tenant:
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(tenant_id)
            state = TenantState(tenant.state)
            if state == TenantState.DEPROVISIONED:
                return Tenant.model_validate(tenant)

            tenant = await registry.tenants.transition(
                tenant_id,
                state,
                TenantState.DEPROVISIONED,
                job_id=tenant.active_clone_job_id,
                detail=reason or "deprovisioned",
            )
            for binding in await registry.domains.list_for_tenant(tenant_id):
                if DomainState(binding.state) in OPEN_DOMAIN_STATES:
                    await registry.domains.transition(
                        binding,
                        DomainState.FAILED,
                        detail="tenant deprovisioned",
                        error_code=DomainErrorCode.TENANT_DEPROVISIONED,
                        error="domain: site was deprovisioned",
                        next_check_at=None,
                    )
            return Tenant.model_validate(tenant)
