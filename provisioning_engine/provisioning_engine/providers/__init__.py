"""External capability interfaces and their bundled implementations."""

from provisioning_engine.providers.base import (
    CertificateStatus,
    DnsProvider,
    DnsRecord,
    HostingPanel,
    Notifier,
    ResolutionResult,
    Scheduler,
)
from provisioning_engine.providers.local import (
    InlineScheduler,
    InMemoryDnsProvider,
    InMemoryHostingPanel,
    LoggingNotifier,
    TaskScheduler,
)
from provisioning_engine.providers.webhook import WebhookNotifier

__all__ = [
    "CertificateStatus",
    "DnsProvider",
    "DnsRecord",
    "HostingPanel",
    "InMemoryDnsProvider",
    "InMemoryHostingPanel",
    "InlineScheduler",
    "LoggingNotifier",
    "Notifier",
    "ResolutionResult",
    "Scheduler",
    "TaskScheduler",
    "WebhookNotifier",
]
