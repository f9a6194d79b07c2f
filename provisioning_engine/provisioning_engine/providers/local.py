"""In-process capability implementations for local mode and tests.

None of these talk to the network.  The DNS provider and hosting panel keep
their state in dictionaries and can be scripted to fail, which is how the
retry and escalation paths are exercised without real providers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from datetime import UTC, datetime
from typing import Any

from provisioning_engine.models.events import NotificationKind
from provisioning_engine.models.jobs import JobRequest
from provisioning_engine.providers.base import CertificateStatus, DnsRecord, ResolutionResult

logger = logging.getLogger(__name__)


class _FailureScript:
    """Queue of exceptions to raise from named operations, in order."""

    def __init__(self) -> None:
        self._queued: dict[str, deque[Exception]] = defaultdict(deque)
        self.calls: dict[str, int] = defaultdict(int)

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self._queued[operation].extend(errors)

    def check(self, operation: str) -> None:
        self.calls[operation] += 1
        queued = self._queued.get(operation)
        if queued:
            raise queued.popleft()


class InMemoryDnsProvider:
    """DNS host and CA backed by dictionaries.

    Parameters
    ----------
    issue_after_polls:
        Number of ``check_certificate_status`` calls that report ``pending``
        before a certificate is issued.
    """

    def __init__(self, *, issue_after_polls: int = 0) -> None:
        self.records: dict[str, DnsRecord] = {}
        self.issue_after_polls = issue_after_polls
        self.certificate_polls: dict[str, int] = defaultdict(int)
        self.failed_certificates: set[str] = set()
        # domain -> resolution the public DNS reports, overriding the record
        self.resolution_overrides: dict[str, ResolutionResult] = {}
        self.failures = _FailureScript()

    async def get_record(self, domain: str) -> DnsRecord | None:
        self.failures.check("get_record")
        return self.records.get(domain)

    async def create_record(
        self,
        domain: str,
        target: str,
        *,
        verification_token: str | None = None,
    ) -> DnsRecord:
        self.failures.check("create_record")
        record = DnsRecord(domain=domain, target=target, verification_token=verification_token)
        self.records[domain] = record
        logger.debug("DNS record created: %s -> %s", domain, target)
        return record

    async def check_certificate_status(self, domain: str) -> CertificateStatus:
        self.failures.check("check_certificate_status")
        if domain in self.failed_certificates:
            return CertificateStatus.FAILED
        if domain not in self.records:
            return CertificateStatus.PENDING
        self.certificate_polls[domain] += 1
        if self.certificate_polls[domain] > self.issue_after_polls:
            return CertificateStatus.ISSUED
        return CertificateStatus.PENDING

    async def check_resolution(self, domain: str) -> ResolutionResult:
        self.failures.check("check_resolution")
        if domain in self.resolution_overrides:
            return self.resolution_overrides[domain]
        record = self.records.get(domain)
        if record is None:
            return ResolutionResult()
        return ResolutionResult(target=record.target, verification_token=record.verification_token)


class InMemoryHostingPanel:
    """Hosting panel that remembers which subdomains and domains it serves."""

    def __init__(self) -> None:
        self.subdomains: set[str] = set()
        self.domains: set[str] = set()
        self.failures = _FailureScript()

    async def subdomain_exists(self, name: str) -> bool:
        self.failures.check("subdomain_exists")
        return name in self.subdomains

    async def create_subdomain(self, name: str) -> None:
        self.failures.check("create_subdomain")
        self.subdomains.add(name)

    async def domain_on_server(self, domain: str) -> bool:
        self.failures.check("domain_on_server")
        return domain in self.domains

    async def add_domain_to_server(self, domain: str) -> None:
        self.failures.check("add_domain_to_server")
        self.domains.add(domain)


class LoggingNotifier:
    """Notifier that logs every event and keeps a copy for inspection."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, NotificationKind, dict[str, Any]]] = []

    async def notify(
        self,
        tenant_id: str,
        event_kind: NotificationKind,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.sent.append((tenant_id, event_kind, dict(detail or {})))
        logger.info("Notification tenant=%s event=%s detail=%s", tenant_id, event_kind.value, detail or {})

    def kinds_for(self, tenant_id: str) -> list[NotificationKind]:
        return [kind for tid, kind, _ in self.sent if tid == tenant_id]


class InlineScheduler:
    """Scheduler that holds jobs in memory until :meth:`drain` runs them.

    Jobs are run in ``run_at`` order.  ``drain`` only runs jobs that are due:
    by *now* when given, otherwise by the current time at each step, so
    deferred work waits for a later drain.
    """

    def __init__(self) -> None:
        self.pending: list[JobRequest] = []
        self.history: list[JobRequest] = []

    async def schedule(self, job: JobRequest) -> None:
        self.pending.append(job)
        self.history.append(job)
        logger.debug("Scheduled %s at %s: %s", job.kind.value, job.run_at.isoformat(), job.payload)

    def due(self, now: datetime | None = None) -> list[JobRequest]:
        cutoff = now or datetime.now(UTC)
        return sorted((job for job in self.pending if job.run_at <= cutoff), key=lambda j: j.run_at)

    async def drain(self, dispatcher: Any, *, now: datetime | None = None, max_jobs: int = 1000) -> int:
        """Dispatch queued jobs (including ones they schedule) until none are due."""
        ran = 0
        while ran < max_jobs:
            ready = self.due(now)
            if not ready:
                break
            job = ready[0]
            self.pending.remove(job)
            await dispatcher.dispatch(job)
            ran += 1
        return ran


class TaskScheduler:
    """Scheduler that runs each job as an ``asyncio`` task in this process.

    A job sleeps until its ``run_at`` and is then handed to the dispatcher
    bound with :meth:`bind`.  Jobs do not survive a restart; the periodic
    sweep re-discovers due domain checks and clone retries from the
    registry.
    """

    def __init__(self) -> None:
        self._dispatcher: Any = None
        self._tasks: set[asyncio.Task[None]] = set()

    def bind(self, dispatcher: Any) -> None:
        self._dispatcher = dispatcher

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def schedule(self, job: JobRequest) -> None:
        if self._dispatcher is None:
            raise RuntimeError("TaskScheduler has no dispatcher bound")
        task = asyncio.create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: JobRequest) -> None:
        delay = (job.run_at - datetime.now(UTC)).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self._dispatcher.dispatch(job)
        except Exception:
            logger.exception("Job %s failed: %s", job.kind.value, job.payload)

    async def close(self) -> None:
        """Cancel every job still waiting or running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
