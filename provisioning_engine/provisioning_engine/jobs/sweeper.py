"""Periodic background sweep.

Runs as an ``asyncio`` background task inside the API process or the
``provisioning worker`` command.  Each tick suspends tenants whose grace ran
out, advances due domain bindings, re-schedules stalled clones and finally
drains whatever jobs the in-process scheduler has due.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import InterfaceError, OperationalError

from provisioning_engine.billing.enforcer import SubscriptionEnforcer
from provisioning_engine.domains.lifecycle import DomainLifecycleManager
from provisioning_engine.jobs.dispatcher import JobDispatcher
from provisioning_engine.orchestrator.provisioning import ProvisioningOrchestrator
from provisioning_engine.providers.local import InlineScheduler

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What a single sweep tick did."""

    suspended: int = 0
    domains_advanced: int = 0
    clones_rescheduled: int = 0
    jobs_run: int = 0


class SweepLoop:
    """AsyncIO background task for enforcement and domain polling.

    Parameters
    ----------
    enforcer:
        Suspends tenants past their grace deadline.
    domains:
        Advances bindings whose next check is due.
    orchestrator:
        Re-schedules clone work lost by the scheduler.
    dispatcher:
        Runs jobs drained from *scheduler*.
    scheduler:
        The in-process scheduler to drain each tick, if any.
    interval:
        Seconds between ticks.
    """

    def __init__(
        self,
        *,
        enforcer: SubscriptionEnforcer,
        domains: DomainLifecycleManager,
        orchestrator: ProvisioningOrchestrator,
        dispatcher: JobDispatcher,
        scheduler: InlineScheduler | None = None,
        interval: float = 300.0,
    ) -> None:
        self._enforcer = enforcer
        self._domains = domains
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._interval = interval
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the sweep loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the sweep background task."""
        if self._running:
            logger.warning("SweepLoop already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("SweepLoop started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        """Stop the sweep loop gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("SweepLoop stopped")

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        """Run every sweep step once.

        *now* defaults to the current time; passing it lets callers replay a
        sweep as of a later moment.
        """
        at = now or datetime.now(UTC)
        report = SweepReport()
        report.suspended = len(await self._enforcer.sweep(at))
        report.domains_advanced = len(await self._domains.sweep(at))
        report.clones_rescheduled = await self._orchestrator.recover_stalled_clones(at)
        if self._scheduler is not None:
            report.jobs_run = await self._scheduler.drain(self._dispatcher, now=now)
        logger.debug("Sweep tick complete: %s", report)
        return report

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("SweepLoop database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("SweepLoop unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)
