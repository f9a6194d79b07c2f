"""Template cloning into a tenant namespace.

A clone runs in four phases, each with its own transaction boundary:

1. **Claim** -- look the job up by idempotency key; create or re-claim it,
   take the tenant's in-flight marker and move the tenant to ``cloning``,
   all in one transaction.  A competing claimer loses on a unique key or a
   conditional update and rolls back without side effects.
2. **Copy** -- make sure the tenant subdomain exists on the hosting panel
   (check-before-create) and load the template's content graph.
3. **Rewrite** -- record the ``rewriting`` status, then run the reference
   rewrite engine over every item in memory.
4. **Finish** -- write the tenant content, complete the job, release the
   marker and move the tenant to ``active_pending_domain`` in one
   transaction, then notify the owner.

A failure in any phase marks the job failed and releases the marker; the
tenant keeps its state and gets ``last_error``.  Transient failures are
rescheduled with exponential backoff under the same idempotency key until
the attempt budget runs out, at which point (or immediately, for permanent
failures) the tenant is escalated to ``manual_intervention``.

A claimed job that sees no write for ``clone_lease_seconds`` is treated as
abandoned by a dead worker: it is failed as retryable (or escalated when the
budget is spent) and can then be claimed again.  A worker that resumes after
losing its job this way writes nothing.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from provisioning_engine.config import Settings
from provisioning_engine.errors import (
    CloneAttemptsExhausted,
    CloneLeaseExpired,
    InvalidTransition,
    ProvisioningError,
    StateConflict,
)
from provisioning_engine.jobs.retry import RetryConfig, is_retryable, next_attempt_at
from provisioning_engine.models.clone_job import (
    IN_FLIGHT_STATUSES,
    CloneJobStatus,
    CloneOutcome,
    CloneResult,
)
from provisioning_engine.models.events import NotificationKind
from provisioning_engine.models.jobs import JobRequest
from provisioning_engine.models.tenant import TenantState
from provisioning_engine.providers.base import HostingPanel, Notifier, Scheduler
from provisioning_engine.rewrite.engine import from_json, rewrite_many, to_json
from provisioning_engine.state.registry import Registry, SessionFactory, registry_scope
from provisioning_engine.state.tables import CloneJobTable
from provisioning_engine.telemetry.metrics import (
    CLONE_DURATION,
    CLONE_JOBS_TOTAL,
    CONTENT_ITEMS_REWRITTEN,
)

logger = logging.getLogger(__name__)


@dataclass
class _Attempt:
    """The job this call claimed, captured before its session closed."""

    job_id: str
    tenant_id: str
    template_id: str
    idempotency_key: str
    attempt_count: int
    subdomain: str


@dataclass
class _Abandoned:
    """A claimed job whose lease ran out before it finished."""

    job_id: str


_LEASED_STATUSES = frozenset({CloneJobStatus.RUNNING.value, CloneJobStatus.REWRITING.value})


def _owned_by(job: CloneJobTable, attempt: _Attempt) -> bool:
    """Whether *job* is still the in-flight run this attempt claimed."""
    return job.status in _LEASED_STATUSES and job.attempt_count == attempt.attempt_count


def _outcome_of(job: CloneJobTable) -> CloneOutcome:
    """Describe a job some other caller has already moved on."""
    status = CloneJobStatus(job.status)
    if status == CloneJobStatus.COMPLETED:
        return CloneOutcome.DISCARDED if job.discarded else CloneOutcome.CACHED
    if status == CloneJobStatus.FAILED:
        return CloneOutcome.RETRY_SCHEDULED if job.retryable else CloneOutcome.ESCALATED
    return CloneOutcome.IN_PROGRESS


def _result(job: CloneJobTable, outcome: CloneOutcome) -> CloneResult:
    return CloneResult(
        outcome=outcome,
        job_id=job.job_id,
        tenant_id=job.tenant_id,
        status=CloneJobStatus(job.status),
        attempt_count=job.attempt_count,
        items_copied=job.items_copied,
        items_rewritten=job.items_rewritten,
        error=job.error,
    )


class TemplateCloner:
    """Copies template content into tenants, exactly once per activation.

    Parameters
    ----------
    session_factory:
        Produces a fresh ``AsyncSession`` per transaction.
    hosting:
        Hosting panel capability used to create the tenant subdomain.
    notifier:
        Owner/operator notification capability.
    scheduler:
        Receives retry jobs for transient failures.
    settings:
        Attempt budget, backoff curve, rewrite depth and tenant host naming.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        hosting: HostingPanel,
        notifier: Notifier,
        scheduler: Scheduler,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._hosting = hosting
        self._notifier = notifier
        self._scheduler = scheduler
        self._settings = settings
        self._backoff = RetryConfig(
            max_retries=settings.clone_max_attempts,
            base_delay=settings.clone_backoff_base,
            max_delay=settings.clone_backoff_max,
            jitter=False,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def clone_template(self, template_id: str, tenant_id: str, idempotency_key: str) -> CloneResult:
        """Clone *template_id* into *tenant_id* under *idempotency_key*.

        Returns
        -------
        CloneResult
            ``cached`` for an already completed key, ``in_progress`` when
            another live worker holds the job, otherwise the outcome of this
            attempt.  A job whose worker let its lease lapse is reclaimed
            and run again here.

        Raises
        ------
        CloneAttemptsExhausted
            If the key's job failed for good and the tenant awaits an operator.
        InvalidTransition
            If the tenant is in a state that cannot start a clone.
        """
        try:
            claimed = await self._claim(template_id, tenant_id, idempotency_key)
            if isinstance(claimed, _Abandoned):
                reaped = await self.reclaim_abandoned(claimed.job_id)
                if reaped is not None and reaped.outcome != CloneOutcome.RETRY_SCHEDULED:
                    return reaped
                claimed = await self._claim(template_id, tenant_id, idempotency_key)
        except StateConflict as exc:
            logger.info("Clone claim for key %s lost a race: %s", idempotency_key, exc)
            return await self._current_status(tenant_id, idempotency_key)

        if isinstance(claimed, _Abandoned):
            return await self._current_status(tenant_id, idempotency_key)
        if isinstance(claimed, CloneResult):
            CLONE_JOBS_TOTAL.labels(outcome=claimed.outcome.value).inc()
            return claimed

        started = time.monotonic()
        try:
            items, replacements = await self._copy(claimed)
            rewritten, changed = await self._rewrite(claimed, items, replacements)
            result = await self._finish(claimed, rewritten, changed)
        except Exception as exc:
            result = await self._fail(claimed, exc)
        finally:
            CLONE_DURATION.observe(time.monotonic() - started)

        CLONE_JOBS_TOTAL.labels(outcome=result.outcome.value).inc()
        return result

    async def requeue_for_manual_retry(self, tenant_id: str) -> CloneResult:
        """Restart an escalated tenant's clone with a fresh attempt budget.

        Moves the tenant ``manual_intervention -> cloning``, resets the
        latest job's attempt counter and schedules it under its original
        idempotency key.
        """
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(tenant_id)
            if tenant.state != TenantState.MANUAL_INTERVENTION.value:
                raise InvalidTransition(
                    f"only tenants in manual_intervention can be requeued (tenant is {tenant.state})",
                    step="clone",
                )
            job = await registry.clone_jobs.latest_for_tenant(tenant_id)
            if job is None or job.status != CloneJobStatus.FAILED.value:
                raise InvalidTransition("tenant has no failed clone job to requeue", step="clone")

            job = await registry.clone_jobs.upsert(
                {
                    "job_id": job.job_id,
                    "attempt_count": 0,
                    "retryable": True,
                    "next_attempt_at": datetime.now(UTC),
                },
                expected_version=job.version,
            )
            await registry.tenants.transition(
                tenant_id,
                TenantState.MANUAL_INTERVENTION,
                TenantState.CLONING,
                job_id=job.job_id,
                detail="requeued by operator",
            )
            result = _result(job, CloneOutcome.RETRY_SCHEDULED)
            request = JobRequest.clone(
                template_id=job.template_id,
                tenant_id=tenant_id,
                idempotency_key=job.idempotency_key,
            )

        await self._scheduler.schedule(request)
        logger.info("Requeued clone job %s for tenant %s", result.job_id, tenant_id)
        return result

    async def reclaim_abandoned(self, job_id: str, *, now: datetime | None = None) -> CloneResult | None:
        """Fail a claimed job whose lease has lapsed, freeing the tenant's clone slot.

        The failure counts against the attempt budget: with attempts left
        the job is rescheduled like any transient failure, otherwise the
        tenant is escalated to ``manual_intervention``.  Returns ``None``
        when the job is not (or no longer) abandoned as of *now*.
        """
        now = now or datetime.now(UTC)
        stale_before = now - timedelta(seconds=self._settings.clone_lease_seconds)
        async with registry_scope(self._session_factory) as registry:
            job = await registry.clone_jobs.get(job_id)
            if job is None or job.status not in _LEASED_STATUSES or job.updated_at > stale_before:
                return None
            tenant = await registry.tenants.require(job.tenant_id)
            last_seen = job.updated_at
            attempt = _Attempt(
                job_id=job.job_id,
                tenant_id=job.tenant_id,
                template_id=job.template_id,
                idempotency_key=job.idempotency_key,
                attempt_count=job.attempt_count,
                subdomain=tenant.subdomain,
            )

        logger.warning(
            "Clone job %s (tenant=%s attempt=%d) has made no progress since %s; reclaiming",
            attempt.job_id,
            attempt.tenant_id,
            attempt.attempt_count,
            last_seen.isoformat(),
        )
        exc = CloneLeaseExpired("the worker running this clone stopped responding")
        result = await self._fail(attempt, exc, now=now, stale_before=stale_before)
        CLONE_JOBS_TOTAL.labels(outcome=result.outcome.value).inc()
        return result

    # ------------------------------------------------------------------
    # Phase 1: claim
    # ------------------------------------------------------------------

    async def _claim(
        self, template_id: str, tenant_id: str, idempotency_key: str
    ) -> _Attempt | _Abandoned | CloneResult:
        async with registry_scope(self._session_factory) as registry:
            job = await registry.clone_jobs.get_by_key(idempotency_key)

            if job is not None:
                status = CloneJobStatus(job.status)
                if status == CloneJobStatus.COMPLETED:
                    return _result(job, CloneOutcome.CACHED)
                if status in IN_FLIGHT_STATUSES:
                    lease = timedelta(seconds=self._settings.clone_lease_seconds)
                    if job.status in _LEASED_STATUSES and job.updated_at + lease <= datetime.now(UTC):
                        return _Abandoned(job.job_id)
                    return _result(job, CloneOutcome.IN_PROGRESS)
                if not job.retryable or job.attempt_count >= self._settings.clone_max_attempts:
                    raise CloneAttemptsExhausted(
                        f"clone gave up after {job.attempt_count} attempts; operator action required",
                        attempts=job.attempt_count,
                    )

            tenant = await registry.tenants.require(tenant_id)
            state = TenantState(tenant.state)

            if state == TenantState.DEPROVISIONED:
                return await self._discard_for_deprovisioned(registry, job, template_id, tenant_id, idempotency_key)
            if state not in (TenantState.PENDING, TenantState.CLONING):
                raise InvalidTransition(f"tenant {tenant_id} is {state.value}; cannot start a clone", step="clone")

            if job is None:
                job = await registry.clone_jobs.upsert(
                    {
                        "job_id": uuid.uuid4().hex,
                        "tenant_id": tenant_id,
                        "template_id": template_id,
                        "idempotency_key": idempotency_key,
                        "status": CloneJobStatus.QUEUED,
                    },
                    expected_version=None,
                )

            job = await registry.clone_jobs.upsert(
                {
                    "job_id": job.job_id,
                    "status": CloneJobStatus.RUNNING,
                    "attempt_count": job.attempt_count + 1,
                    "error": None,
                    "next_attempt_at": None,
                    "finished_at": None,
                },
                expected_version=job.version,
            )

            if not await registry.tenants.claim_clone_slot(tenant_id, job.job_id):
                holder = (await registry.tenants.require(tenant_id)).active_clone_job_id
                raise StateConflict(f"tenant {tenant_id} already has clone job {holder} in flight")

            if state == TenantState.PENDING:
                await registry.tenants.transition(
                    tenant_id,
                    TenantState.PENDING,
                    TenantState.CLONING,
                    job_id=job.job_id,
                )

            logger.info(
                "Claimed clone job %s (tenant=%s template=%s attempt=%d)",
                job.job_id,
                tenant_id,
                template_id,
                job.attempt_count,
            )
            return _Attempt(
                job_id=job.job_id,
                tenant_id=tenant_id,
                template_id=template_id,
                idempotency_key=idempotency_key,
                attempt_count=job.attempt_count,
                subdomain=tenant.subdomain,
            )

    async def _discard_for_deprovisioned(
        self,
        registry: Registry,
        job: CloneJobTable | None,
        template_id: str,
        tenant_id: str,
        idempotency_key: str,
    ) -> CloneResult:
        now = datetime.now(UTC)
        values = {
            "status": CloneJobStatus.COMPLETED,
            "discarded": True,
            "retryable": False,
            "next_attempt_at": None,
            "finished_at": now,
        }
        if job is None:
            job = await registry.clone_jobs.upsert(
                {
                    "job_id": uuid.uuid4().hex,
                    "tenant_id": tenant_id,
                    "template_id": template_id,
                    "idempotency_key": idempotency_key,
                    **values,
                },
                expected_version=None,
            )
        else:
            job = await registry.clone_jobs.upsert({"job_id": job.job_id, **values}, expected_version=job.version)
        logger.info("Tenant %s is deprovisioned; clone job %s discarded", tenant_id, job.job_id)
        return _result(job, CloneOutcome.DISCARDED)

    async def _current_status(self, tenant_id: str, idempotency_key: str) -> CloneResult:
        """Describe whichever job won a claim race."""
        async with registry_scope(self._session_factory) as registry:
            job = await registry.clone_jobs.get_by_key(idempotency_key)
            if job is None:
                tenant = await registry.tenants.require(tenant_id)
                if tenant.active_clone_job_id:
                    job = await registry.clone_jobs.get(tenant.active_clone_job_id)
            if job is None:
                raise StateConflict(f"clone claim for tenant {tenant_id} conflicted; retry later", step="clone")
            outcome = CloneOutcome.CACHED if job.status == CloneJobStatus.COMPLETED.value else CloneOutcome.IN_PROGRESS
            return _result(job, outcome)

    # ------------------------------------------------------------------
    # Phase 2: copy
    # ------------------------------------------------------------------

    async def _copy(self, attempt: _Attempt) -> tuple[list[dict[str, Any]], list[tuple[str, str]]]:
        if not await self._hosting.subdomain_exists(attempt.subdomain):
            await self._hosting.create_subdomain(attempt.subdomain)
            logger.info("Created hosting subdomain %s", attempt.subdomain)

        async with registry_scope(self._session_factory) as registry:
            template = await registry.templates.require(attempt.template_id)
            rows = await registry.templates.list_items(attempt.template_id)
            items = [{"item_key": r.item_key, "position": r.position, "payload": r.payload} for r in rows]

            replacements: list[tuple[str, str]] = []
            if template.canonical_domain:
                replacements.append((template.canonical_domain, self._settings.tenant_host(attempt.subdomain)))
            replacements.append((template.canonical_identifier, attempt.subdomain))

        logger.debug("Loaded %d template items for job %s", len(items), attempt.job_id)
        return items, replacements

    # ------------------------------------------------------------------
    # Phase 3: rewrite
    # ------------------------------------------------------------------

    async def _rewrite(
        self,
        attempt: _Attempt,
        items: list[dict[str, Any]],
        replacements: list[tuple[str, str]],
    ) -> tuple[list[dict[str, Any]], int]:
        async with registry_scope(self._session_factory) as registry:
            job = await registry.clone_jobs.get(attempt.job_id)
            assert job is not None
            if not _owned_by(job, attempt):
                raise StateConflict(f"clone job {attempt.job_id} was reclaimed after its lease expired", step="clone")
            await registry.clone_jobs.upsert(
                {
                    "job_id": attempt.job_id,
                    "status": CloneJobStatus.REWRITING,
                    "items_copied": len(items),
                },
                expected_version=job.version,
            )

        output: list[dict[str, Any]] = []
        changed = 0
        for item in items:
            tree = from_json(item["payload"])
            new_tree = rewrite_many(tree, replacements, max_depth=self._settings.rewrite_max_depth)
            is_rewritten = new_tree is not tree
            if is_rewritten:
                changed += 1
            output.append(
                {
                    "item_key": item["item_key"],
                    "position": item["position"],
                    "payload": to_json(new_tree) if is_rewritten else item["payload"],
                    "rewritten": is_rewritten,
                }
            )
        return output, changed

    # ------------------------------------------------------------------
    # Phase 4: finish
    # ------------------------------------------------------------------

    async def _finish(self, attempt: _Attempt, items: list[dict[str, Any]], changed: int) -> CloneResult:
        provisioned = False
        async with registry_scope(self._session_factory) as registry:
            tenant = await registry.tenants.require(attempt.tenant_id)
            state = TenantState(tenant.state)
            job = await registry.clone_jobs.get(attempt.job_id)
            assert job is not None
            if not _owned_by(job, attempt):
                logger.warning(
                    "Clone job %s attempt %d lost its lease before finishing; output dropped",
                    attempt.job_id,
                    attempt.attempt_count,
                )
                return _result(job, _outcome_of(job))
            now = datetime.now(UTC)

            if state == TenantState.DEPROVISIONED:
                job = await registry.clone_jobs.upsert(
                    {
                        "job_id": attempt.job_id,
                        "status": CloneJobStatus.COMPLETED,
                        "discarded": True,
                        "retryable": False,
                        "finished_at": now,
                    },
                    expected_version=job.version,
                )
                await registry.tenants.release_clone_slot(attempt.tenant_id, attempt.job_id)
                logger.info("Tenant %s deprovisioned mid-clone; output of job %s discarded", tenant.tenant_id, job.job_id)
                return _result(job, CloneOutcome.DISCARDED)

            await registry.content.write_cloned_items(
                attempt.tenant_id,
                items,
                source_template_id=attempt.template_id,
                clone_job_id=attempt.job_id,
            )
            job = await registry.clone_jobs.upsert(
                {
                    "job_id": attempt.job_id,
                    "status": CloneJobStatus.COMPLETED,
                    "items_rewritten": changed,
                    "retryable": False,
                    "error": None,
                    "finished_at": now,
                },
                expected_version=job.version,
            )
            await registry.tenants.release_clone_slot(attempt.tenant_id, attempt.job_id)

            if state == TenantState.CLONING:
                await registry.tenants.transition(
                    attempt.tenant_id,
                    TenantState.CLONING,
                    TenantState.ACTIVE_PENDING_DOMAIN,
                    job_id=attempt.job_id,
                    clear_error=True,
                )
                provisioned = True
            elif state == TenantState.SUSPENDED:
                # Reactivation should land on the freshly provisioned state.
                subscription = await registry.subscriptions.ensure(attempt.tenant_id)
                if subscription.resume_state is None:
                    await registry.subscriptions.update(
                        attempt.tenant_id,
                        expected_version=subscription.version,
                        resume_state=TenantState.ACTIVE_PENDING_DOMAIN,
                    )
            else:
                logger.warning(
                    "Clone job %s finished while tenant %s is %s; state left unchanged",
                    attempt.job_id,
                    attempt.tenant_id,
                    state.value,
                )
            result = _result(job, CloneOutcome.COMPLETED)

        CONTENT_ITEMS_REWRITTEN.inc(changed)
        logger.info(
            "Clone job %s completed: %d items copied, %d rewritten",
            result.job_id,
            result.items_copied,
            result.items_rewritten,
        )
        if provisioned:
            await self._notify(
                attempt.tenant_id,
                NotificationKind.PROVISIONED,
                {"job_id": attempt.job_id, "host": self._settings.tenant_host(attempt.subdomain)},
            )
        return result

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _fail(
        self,
        attempt: _Attempt,
        exc: Exception,
        *,
        now: datetime | None = None,
        stale_before: datetime | None = None,
    ) -> CloneResult:
        if isinstance(exc, ProvisioningError):
            message = exc.user_message
            logger.warning("Clone job %s failed: %s", attempt.job_id, message)
        else:
            message = "clone: unexpected internal error"
            logger.exception("Clone job %s crashed", attempt.job_id)

        will_retry = is_retryable(exc) and attempt.attempt_count < self._settings.clone_max_attempts
        now = now or datetime.now(UTC)
        retry_at = next_attempt_at(now, attempt.attempt_count - 1, self._backoff) if will_retry else None
        escalated = False

        async with registry_scope(self._session_factory) as registry:
            job = await registry.clone_jobs.get(attempt.job_id)
            assert job is not None
            if not _owned_by(job, attempt) or (stale_before is not None and job.updated_at > stale_before):
                # Someone else already settled or re-claimed this job.
                return _result(job, _outcome_of(job))
            job = await registry.clone_jobs.upsert(
                {
                    "job_id": attempt.job_id,
                    "status": CloneJobStatus.FAILED,
                    "error": message,
                    "retryable": will_retry,
                    "next_attempt_at": retry_at,
                    "finished_at": now,
                },
                expected_version=job.version,
            )
            await registry.tenants.release_clone_slot(attempt.tenant_id, attempt.job_id)
            await registry.tenants.set_last_error(attempt.tenant_id, message)

            if not will_retry:
                tenant = await registry.tenants.require(attempt.tenant_id)
                if tenant.state == TenantState.CLONING.value:
                    await registry.tenants.transition(
                        attempt.tenant_id,
                        TenantState.CLONING,
                        TenantState.MANUAL_INTERVENTION,
                        job_id=attempt.job_id,
                        detail=message,
                    )
                    escalated = True
            result = _result(job, CloneOutcome.RETRY_SCHEDULED if will_retry else CloneOutcome.ESCALATED)

        if will_retry:
            await self._scheduler.schedule(
                JobRequest.clone(
                    template_id=attempt.template_id,
                    tenant_id=attempt.tenant_id,
                    idempotency_key=attempt.idempotency_key,
                    run_at=retry_at,
                )
            )
            logger.info(
                "Clone job %s attempt %d/%d failed; retry at %s",
                attempt.job_id,
                attempt.attempt_count,
                self._settings.clone_max_attempts,
                retry_at.isoformat() if retry_at else "-",
            )
        elif escalated:
            detail = {"job_id": attempt.job_id, "error": message, "attempts": attempt.attempt_count}
            await self._notify(attempt.tenant_id, NotificationKind.OPERATOR_ESCALATION, detail)
            await self._notify(attempt.tenant_id, NotificationKind.CLONE_FAILED, detail)
        return result

    async def _notify(self, tenant_id: str, kind: NotificationKind, detail: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(tenant_id, kind, detail)
        except Exception:
            logger.exception("Notification %s for tenant %s failed", kind.value, tenant_id)
