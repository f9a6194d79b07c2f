"""Custom domain lifecycle.

Each binding walks ``pending_dns -> pending_ssl -> verifying -> ready ->
active`` one step per :meth:`DomainLifecycleManager.advance` call.  Nothing
here blocks waiting on a provider: a step that is not ready yet records
``next_check_at`` and schedules another ``advance``.

Provider calls are made outside database transactions.  The write that
follows is conditioned on the binding's version, so two concurrent advances
of the same binding cannot both apply; the loser simply stops.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from provisioning_engine.config import Settings
from provisioning_engine.errors import (
    DnsRejected,
    DomainConflict,
    InvalidDomain,
    InvalidTransition,
    ProviderError,
    ProviderPermanent,
    ProviderTransient,
    StateConflict,
)
from provisioning_engine.jobs.retry import RetryConfig, compute_delay
from provisioning_engine.models.domain import (
    AdvanceResult,
    DomainBinding,
    DomainErrorCode,
    DomainState,
    normalise_domain,
)
from provisioning_engine.models.events import NotificationKind
from provisioning_engine.models.jobs import JobRequest
from provisioning_engine.models.tenant import TenantState
from provisioning_engine.providers.base import (
    CertificateStatus,
    DnsProvider,
    HostingPanel,
    Notifier,
    Scheduler,
)
from provisioning_engine.state.registry import Registry, SessionFactory, registry_scope
from provisioning_engine.state.tables import DomainBindingTable
from provisioning_engine.telemetry.metrics import DOMAIN_DEFERRALS_TOTAL, DOMAIN_TRANSITIONS_TOTAL

logger = logging.getLogger(__name__)

# Tenant states from which an activated domain is recorded in resume_state
# rather than applied to the tenant directly.
_PAUSED_TENANT_STATES = frozenset({TenantState.GRACE_BILLING, TenantState.GRACE_CANCELLED, TenantState.SUSPENDED})


def _error_code(exc: ProviderError) -> DomainErrorCode:
    if isinstance(exc, DomainConflict):
        return DomainErrorCode.DOMAIN_CONFLICT
    if isinstance(exc, DnsRejected):
        return DomainErrorCode.DNS_REJECTED
    return DomainErrorCode.PROVIDER_PERMANENT


class DomainLifecycleManager:
    """Drives custom domain bindings through DNS, SSL, verification and activation.

    Parameters
    ----------
    session_factory:
        Produces a fresh ``AsyncSession`` per transaction.
    dns:
        DNS host / certificate authority capability.
    hosting:
        Hosting panel the activated domain is attached to.
    notifier:
        Owner notifications on activation and failure.
    scheduler:
        Receives follow-up ``advance`` jobs.
    settings:
        Retry budget, polling bounds and backoff curve.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        dns: DnsProvider,
        hosting: HostingPanel,
        notifier: Notifier,
        scheduler: Scheduler,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._dns = dns
        self._hosting = hosting
        self._notifier = notifier
        self._scheduler = scheduler
        self._settings = settings
        self._backoff = RetryConfig(
            max_retries=settings.domain_max_retries,
            base_delay=settings.domain_backoff_base,
            max_delay=settings.domain_backoff_max,
            jitter=False,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def add_domain(self, tenant_id: str, domain: str) -> DomainBinding:
        """Bind *domain* to *tenant_id* and run the DNS step.

        Adding a domain the tenant already holds returns the existing
        binding unchanged.

        Raises
        ------
        InvalidDomain
            If *domain* is not a valid hostname.
        ContentLocked
            If the tenant is in a state that rejects changes.
        DomainConflict
            If another tenant holds *domain*.
        """
        normalised = normalise_domain(domain)
        if normalised is None:
            raise InvalidDomain(f"{domain!r} is not a valid domain name")

        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.assert_content_mutable(tenant_id)
            if tenant.subdomain and normalised == self._settings.tenant_host(tenant.subdomain):
                raise InvalidDomain("the tenant's platform host cannot be added as a custom domain")

            existing = await registry.domains.get_live_by_domain(normalised)
            if existing is None:
                existing = await registry.domains.create(
                    tenant_id=tenant_id,
                    domain=normalised,
                    verification_token=secrets.token_urlsafe(24),
                )
                created = existing is not None
                if existing is None:
                    existing = await registry.domains.get_live_by_domain(normalised)
            else:
                created = False

            if existing is None:
                raise StateConflict(f"domain {normalised} changed concurrently; retry", step="domain")
            if existing.tenant_id != tenant_id:
                raise DomainConflict(f"{normalised} is already bound to another site")
            binding_id = existing.binding_id

        if not created:
            logger.info("Domain %s already bound to tenant %s", normalised, tenant_id)
            return await self.get(binding_id)

        logger.info("Domain %s added for tenant %s (binding %s)", normalised, tenant_id, binding_id)
        await self._advance_once(binding_id)
        return await self.get(binding_id)

    async def advance(self, binding_id: str) -> AdvanceResult:
        """Attempt the next lifecycle step for *binding_id*.

        Every call either completes a transition or records when to check
        again; follow-up checks are scheduled automatically.
        """
        result = await self._advance_once(binding_id)
        if result.next_check_at is not None:
            await self._scheduler.schedule(JobRequest.advance(binding_id=binding_id, run_at=result.next_check_at))
        return result

    async def retry(self, binding_id: str) -> DomainBinding:
        """Restart a failed binding at ``pending_dns`` with fresh counters."""
        async with registry_scope(self._session_factory) as registry:
            binding = await registry.domains.require(binding_id)
            if binding.state != DomainState.FAILED.value:
                raise InvalidTransition(
                    f"only failed bindings can be retried (binding is {binding.state})",
                    step="domain",
                )
            await registry.tenants.assert_content_mutable(binding.tenant_id)
            holder = await registry.domains.get_live_by_domain(binding.domain)
            if holder is not None and holder.binding_id != binding_id:
                raise DomainConflict(f"{binding.domain} is already bound to another site")

            now = datetime.now(UTC)
            await registry.domains.transition(
                binding,
                DomainState.PENDING_DNS,
                detail="manual retry",
                retry_count=0,
                poll_count=0,
                error=None,
                error_code=None,
                next_check_at=now,
            )
        DOMAIN_TRANSITIONS_TOTAL.labels(to_state=DomainState.PENDING_DNS.value).inc()
        logger.info("Binding %s restarted at pending_dns", binding_id)
        await self._scheduler.schedule(JobRequest.advance(binding_id=binding_id, run_at=now))
        return await self.get(binding_id)

    async def sweep(self, now: datetime | None = None, *, limit: int = 100) -> list[AdvanceResult]:
        """Advance every open binding whose next check is due."""
        now = now or datetime.now(UTC)
        async with registry_scope(self._session_factory) as registry:
            due = [row.binding_id for row in await registry.domains.list_due(now, limit=limit)]

        results: list[AdvanceResult] = []
        for binding_id in due:
            try:
                results.append(await self._advance_once(binding_id))
            except Exception:
                logger.exception("Sweep failed to advance binding %s", binding_id)
        if due:
            logger.info("Domain sweep advanced %d of %d due bindings", len(results), len(due))
        return results

    async def get(self, binding_id: str) -> DomainBinding:
        async with registry_scope(self._session_factory) as registry:
            return DomainBinding.model_validate(await registry.domains.require(binding_id))

    # ------------------------------------------------------------------
    # Step dispatch
    # ------------------------------------------------------------------

    async def _advance_once(self, binding_id: str) -> AdvanceResult:
        async with registry_scope(self._session_factory) as registry:
            binding = await registry.domains.require(binding_id)

        state = DomainState(binding.state)
        if state in (DomainState.ACTIVE, DomainState.FAILED):
            return AdvanceResult(
                binding_id=binding_id,
                from_state=state,
                to_state=state,
                transitioned=False,
                deferred_reason="terminal",
            )

        steps = {
            DomainState.PENDING_DNS: self._dns_step,
            DomainState.PENDING_SSL: self._certificate_step,
            DomainState.VERIFYING: self._verification_step,
            DomainState.READY: self._activation_step,
        }
        try:
            return await steps[state](binding)
        except ProviderTransient as exc:
            return await self._transient_failure(binding, exc)
        except ProviderPermanent as exc:
            return await self._fail(binding, _error_code(exc), exc.user_message)
        except StateConflict:
            logger.info("Binding %s changed concurrently; leaving it to the other writer", binding_id)
            return AdvanceResult(
                binding_id=binding_id,
                from_state=state,
                to_state=state,
                transitioned=False,
                deferred_reason="concurrent update",
            )

    def _target_for(self, subdomain: str) -> str:
        return self._settings.tenant_host(subdomain)

    async def _dns_step(self, binding: DomainBindingTable) -> AdvanceResult:
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(binding.tenant_id)
        target = self._target_for(tenant.subdomain)

        record = await self._dns.get_record(binding.domain)
        if record is None or record.target != target or record.verification_token != binding.verification_token:
            await self._dns.create_record(
                binding.domain,
                target,
                verification_token=binding.verification_token,
            )
        return await self._move(binding, DomainState.PENDING_SSL, poll_count=0)

    async def _certificate_step(self, binding: DomainBindingTable) -> AdvanceResult:
        status = await self._dns.check_certificate_status(binding.domain)
        if status == CertificateStatus.ISSUED:
            return await self._move(binding, DomainState.VERIFYING, poll_count=0)
        if status == CertificateStatus.FAILED:
            return await self._fail(binding, DomainErrorCode.CERTIFICATE_FAILED, "ssl: certificate issuance failed")
        return await self._poll_again(
            binding,
            "certificate pending",
            DomainErrorCode.CERTIFICATE_TIMEOUT,
            "ssl: certificate was not issued in time",
        )

    async def _verification_step(self, binding: DomainBindingTable) -> AdvanceResult:
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(binding.tenant_id)
        target = self._target_for(tenant.subdomain)

        resolution = await self._dns.check_resolution(binding.domain)
        if resolution.target == target and resolution.verification_token == binding.verification_token:
            return await self._move(binding, DomainState.READY, poll_count=0)
        return await self._poll_again(
            binding,
            "resolution or ownership token not visible yet",
            DomainErrorCode.VERIFICATION_TIMEOUT,
            "verify: domain does not resolve to the site or the ownership token is missing",
        )

    async def _activation_step(self, binding: DomainBindingTable) -> AdvanceResult:
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(binding.tenant_id)
            clone_done = await registry.clone_jobs.has_completed(binding.tenant_id)

        tenant_state = TenantState(tenant.state)
        if tenant_state == TenantState.DEPROVISIONED:
            return await self._fail(binding, DomainErrorCode.TENANT_DEPROVISIONED, "domain: site was deprovisioned")
        if not clone_done:
            return await self._defer(binding, "awaiting clone completion")

        if not await self._hosting.domain_on_server(binding.domain):
            await self._hosting.add_domain_to_server(binding.domain)

        async with registry_scope(self._session_factory) as registry:
            await registry.domains.transition(
                binding,
                DomainState.ACTIVE,
                retry_count=0,
                error=None,
                error_code=None,
                next_check_at=None,
                last_checked_at=datetime.now(UTC),
            )
            await self._promote_tenant(registry, binding.tenant_id)

        DOMAIN_TRANSITIONS_TOTAL.labels(to_state=DomainState.ACTIVE.value).inc()
        await self._notify(binding.tenant_id, NotificationKind.DOMAIN_ACTIVE, {"domain": binding.domain})
        return AdvanceResult(
            binding_id=binding.binding_id,
            from_state=DomainState.READY,
            to_state=DomainState.ACTIVE,
            transitioned=True,
        )

    async def _promote_tenant(self, registry: Registry, tenant_id: str) -> None:
        """Reflect a newly active domain on the owning tenant."""
        tenant = await registry.tenants.require(tenant_id)
        state = TenantState(tenant.state)
        if state == TenantState.ACTIVE_PENDING_DOMAIN:
            await registry.tenants.transition(
                tenant_id,
                TenantState.ACTIVE_PENDING_DOMAIN,
                TenantState.ACTIVE,
                detail="custom domain active",
            )
        elif state in _PAUSED_TENANT_STATES:
            subscription = await registry.subscriptions.get(tenant_id)
            if subscription is not None and subscription.resume_state == TenantState.ACTIVE_PENDING_DOMAIN.value:
                await registry.subscriptions.update(
                    tenant_id,
                    expected_version=subscription.version,
                    resume_state=TenantState.ACTIVE,
                )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _move(self, binding: DomainBindingTable, to_state: DomainState, **fields: Any) -> AdvanceResult:
        now = datetime.now(UTC)
        async with registry_scope(self._session_factory) as registry:
            await registry.domains.transition(
                binding,
                to_state,
                retry_count=0,
                last_checked_at=now,
                next_check_at=now,
                **fields,
            )
        DOMAIN_TRANSITIONS_TOTAL.labels(to_state=to_state.value).inc()
        return AdvanceResult(
            binding_id=binding.binding_id,
            from_state=DomainState(binding.state),
            to_state=to_state,
            transitioned=True,
            next_check_at=now,
        )

    async def _defer(
        self,
        binding: DomainBindingTable,
        reason: str,
        *,
        delay: float | None = None,
        **fields: Any,
    ) -> AdvanceResult:
        now = datetime.now(UTC)
        next_check = now + timedelta(seconds=delay if delay is not None else self._settings.domain_poll_interval)
        async with registry_scope(self._session_factory) as registry:
            await registry.domains.upsert(
                binding.binding_id,
                expected_version=binding.version,
                last_checked_at=now,
                next_check_at=next_check,
                **fields,
            )
        DOMAIN_DEFERRALS_TOTAL.labels(state=binding.state).inc()
        logger.debug("Binding %s deferred (%s) until %s", binding.binding_id, reason, next_check.isoformat())
        state = DomainState(binding.state)
        return AdvanceResult(
            binding_id=binding.binding_id,
            from_state=state,
            to_state=state,
            transitioned=False,
            deferred_reason=reason,
            next_check_at=next_check,
        )

    async def _poll_again(
        self,
        binding: DomainBindingTable,
        reason: str,
        timeout_code: DomainErrorCode,
        timeout_message: str,
    ) -> AdvanceResult:
        polls = binding.poll_count + 1
        if polls >= self._settings.domain_max_polls:
            return await self._fail(binding, timeout_code, timeout_message)
        return await self._defer(binding, reason, poll_count=polls)

    async def _transient_failure(self, binding: DomainBindingTable, exc: ProviderTransient) -> AdvanceResult:
        retries = binding.retry_count + 1
        logger.warning(
            "Transient provider error on binding %s (%d/%d): %s",
            binding.binding_id,
            retries,
            self._settings.domain_max_retries,
            exc.reason,
        )
        if retries > self._settings.domain_max_retries:
            return await self._fail(
                binding,
                DomainErrorCode.RETRIES_EXHAUSTED,
                f"{exc.step}: provider unavailable after {binding.retry_count} retries",
            )
        return await self._defer(
            binding,
            "transient provider error",
            delay=compute_delay(retries - 1, self._backoff),
            retry_count=retries,
            error=exc.user_message,
        )

    async def _fail(self, binding: DomainBindingTable, code: DomainErrorCode, message: str) -> AdvanceResult:
        now = datetime.now(UTC)
        async with registry_scope(self._session_factory) as registry:
            await registry.domains.transition(
                binding,
                DomainState.FAILED,
                detail=message,
                error_code=code,
                error=message,
                last_checked_at=now,
                next_check_at=None,
            )
        DOMAIN_TRANSITIONS_TOTAL.labels(to_state=DomainState.FAILED.value).inc()
        logger.warning("Binding %s (%s) failed: %s [%s]", binding.binding_id, binding.domain, message, code.value)
        await self._notify(
            binding.tenant_id,
            NotificationKind.DOMAIN_FAILED,
            {"domain": binding.domain, "error": message, "error_code": code.value},
        )
        return AdvanceResult(
            binding_id=binding.binding_id,
            from_state=DomainState(binding.state),
            to_state=DomainState.FAILED,
            transitioned=True,
        )

    async def _notify(self, tenant_id: str, kind: NotificationKind, detail: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(tenant_id, kind, detail)
        except Exception:
            logger.exception("Notification %s for tenant %s failed", kind.value, tenant_id)
