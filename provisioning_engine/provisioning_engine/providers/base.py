"""Structural interfaces for the external capabilities the engine drives.

The engine never talks to a DNS host, certificate authority, hosting panel,
mail system or job queue directly.  It consumes these protocols, and the
deployment wires in concrete implementations.  Implementations are **not**
required to subclass anything; matching method signatures are enough.

Every call may be delivered more than once.  Callers check before they
create, and implementations should treat a repeated create as a no-op.

Failures are reported with the provider error taxonomy:
:class:`~provisioning_engine.errors.ProviderTransient` for timeouts and
5xx-class problems, :class:`~provisioning_engine.errors.ProviderPermanent`
(or a subclass) for anything a retry will not fix.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel

from provisioning_engine.models.events import NotificationKind
from provisioning_engine.models.jobs import JobRequest


class CertificateStatus(str, Enum):
    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"


class DnsRecord(BaseModel):
    domain: str
    target: str
    verification_token: str | None = None


class ResolutionResult(BaseModel):
    """What the public DNS currently says about a domain."""

    target: str | None = None
    verification_token: str | None = None


class DnsProvider(Protocol):
    """DNS host and certificate authority."""

    async def get_record(self, domain: str) -> DnsRecord | None:
        """Return the record already published for *domain*, if any."""
        ...

    async def create_record(
        self,
        domain: str,
        target: str,
        *,
        verification_token: str | None = None,
    ) -> DnsRecord:
        """Point *domain* at *target* and publish the ownership token.

        Raises
        ------
        DnsRejected
            If the provider refuses the record.
        """
        ...

    async def check_certificate_status(self, domain: str) -> CertificateStatus:
        """Report whether a TLS certificate has been issued for *domain*."""
        ...

    async def check_resolution(self, domain: str) -> ResolutionResult:
        """Resolve *domain* and read back its ownership token."""
        ...


class HostingPanel(Protocol):
    """The server that actually serves tenant sites."""

    async def subdomain_exists(self, name: str) -> bool: ...

    async def create_subdomain(self, name: str) -> None: ...

    async def domain_on_server(self, domain: str) -> bool: ...

    async def add_domain_to_server(self, domain: str) -> None: ...


class Notifier(Protocol):
    """Owner and operator notifications.

    Fire-and-forget: a failed delivery must never fail the provisioning step
    that triggered it.
    """

    async def notify(
        self,
        tenant_id: str,
        event_kind: NotificationKind,
        detail: dict[str, Any] | None = None,
    ) -> None: ...


class Scheduler(Protocol):
    """Deferred job execution.  Only the contract matters here, not the queue."""

    async def schedule(self, job: JobRequest) -> None: ...
