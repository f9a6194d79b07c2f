"""Component wiring shared by the API, the CLI and the tests."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from provisioning_engine.billing.enforcer import SubscriptionEnforcer
from provisioning_engine.cloner.template_cloner import TemplateCloner
from provisioning_engine.config import Settings
from provisioning_engine.domains.lifecycle import DomainLifecycleManager
from provisioning_engine.jobs.dispatcher import JobDispatcher
from provisioning_engine.jobs.sweeper import SweepLoop
from provisioning_engine.orchestrator.provisioning import ProvisioningOrchestrator
from provisioning_engine.providers.base import DnsProvider, HostingPanel, Notifier, Scheduler
from provisioning_engine.providers.local import (
    InlineScheduler,
    InMemoryDnsProvider,
    InMemoryHostingPanel,
    LoggingNotifier,
    TaskScheduler,
)
from provisioning_engine.providers.webhook import WebhookNotifier
from provisioning_engine.state.registry import SessionFactory

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningContainer:
    """Every component, built once per process over one session factory."""

    settings: Settings
    session_factory: SessionFactory
    dns: DnsProvider
    hosting: HostingPanel
    notifier: Notifier
    scheduler: Scheduler
    cloner: TemplateCloner
    domains: DomainLifecycleManager
    orchestrator: ProvisioningOrchestrator
    enforcer: SubscriptionEnforcer
    dispatcher: JobDispatcher
    sweeper: SweepLoop

    async def close(self) -> None:
        await self.sweeper.stop()
        if isinstance(self.scheduler, TaskScheduler):
            await self.scheduler.close()
        if isinstance(self.notifier, WebhookNotifier):
            await self.notifier.close()


def build_container(
    settings: Settings,
    session_factory: SessionFactory,
    *,
    dns: DnsProvider | None = None,
    hosting: HostingPanel | None = None,
    notifier: Notifier | None = None,
    scheduler: Scheduler | None = None,
) -> ProvisioningContainer:
    """Wire the components for *settings*.

    Capabilities not passed in fall back to the bundled in-memory providers,
    and to a webhook notifier when ``notification_webhook_url`` is set.  A
    :class:`TaskScheduler` is bound to the container's dispatcher; an
    :class:`InlineScheduler` is drained by the sweep loop instead.
    """
    dns = dns or InMemoryDnsProvider()
    hosting = hosting or InMemoryHostingPanel()
    if notifier is None:
        if settings.notification_webhook_url:
            notifier = WebhookNotifier(settings.notification_webhook_url, timeout=settings.notification_timeout)
        else:
            notifier = LoggingNotifier()
    scheduler = scheduler or InlineScheduler()

    cloner = TemplateCloner(
        session_factory,
        hosting=hosting,
        notifier=notifier,
        scheduler=scheduler,
        settings=settings,
    )
    domains = DomainLifecycleManager(
        session_factory,
        dns=dns,
        hosting=hosting,
        notifier=notifier,
        scheduler=scheduler,
        settings=settings,
    )
    orchestrator = ProvisioningOrchestrator(
        session_factory,
        cloner=cloner,
        domains=domains,
        scheduler=scheduler,
        settings=settings,
    )
    enforcer = SubscriptionEnforcer(session_factory, notifier=notifier, settings=settings)
    dispatcher = JobDispatcher(cloner=cloner, domains=domains)
    if isinstance(scheduler, TaskScheduler):
        scheduler.bind(dispatcher)
    sweeper = SweepLoop(
        enforcer=enforcer,
        domains=domains,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        scheduler=scheduler if isinstance(scheduler, InlineScheduler) else None,
        interval=settings.sweep_interval_seconds,
    )
    logger.debug("Built provisioning container (notifier=%s)", type(notifier).__name__)
    return ProvisioningContainer(
        settings=settings,
        session_factory=session_factory,
        dns=dns,
        hosting=hosting,
        notifier=notifier,
        scheduler=scheduler,
        cloner=cloner,
        domains=domains,
        orchestrator=orchestrator,
        enforcer=enforcer,
        dispatcher=dispatcher,
        sweeper=sweeper,
    )
