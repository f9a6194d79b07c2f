"""Custom domain binding models.

Bindings only ever move forward through ``DOMAIN_TRANSITIONS``.  ``failed``
can be entered from every non-terminal state and is left only by a manual
retry, which restarts the binding at ``pending_dns``.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DomainState(str, Enum):
    """Lifecycle state of a custom domain binding."""

    PENDING_DNS = "pending_dns"
    PENDING_SSL = "pending_ssl"
    VERIFYING = "verifying"
    READY = "ready"
    ACTIVE = "active"
    FAILED = "failed"


_D = DomainState

DOMAIN_TRANSITIONS: dict[DomainState, frozenset[DomainState]] = {
    _D.PENDING_DNS: frozenset({_D.PENDING_SSL, _D.FAILED}),
    _D.PENDING_SSL: frozenset({_D.VERIFYING, _D.FAILED}),
    _D.VERIFYING: frozenset({_D.READY, _D.FAILED}),
    _D.READY: frozenset({_D.ACTIVE, _D.FAILED}),
    _D.ACTIVE: frozenset(),
    _D.FAILED: frozenset({_D.PENDING_DNS}),
}

# Bindings in these states are still being driven by the sweep.
OPEN_DOMAIN_STATES: frozenset[DomainState] = frozenset(
    {_D.PENDING_DNS, _D.PENDING_SSL, _D.VERIFYING, _D.READY}
)

_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)(?!-)([a-z0-9-]{1,63}(?<!-)\.)+[a-z]{2,63}$")


def normalise_domain(domain: str) -> str | None:
    """Lower-case and strip *domain*; return ``None`` if it is not a hostname."""
    candidate = domain.strip().rstrip(".").lower()
    if not _HOSTNAME_RE.match(candidate):
        return None
    return candidate


class DomainErrorCode(str, Enum):
    """Stable codes for why a binding failed."""

    DNS_REJECTED = "DnsRejected"
    DOMAIN_CONFLICT = "DomainConflict"
    PROVIDER_PERMANENT = "ProviderPermanent"
    RETRIES_EXHAUSTED = "RetriesExhausted"
    CERTIFICATE_FAILED = "CertificateFailed"
    CERTIFICATE_TIMEOUT = "CertificateTimeout"
    VERIFICATION_TIMEOUT = "VerificationTimeout"
    TENANT_DEPROVISIONED = "TenantDeprovisioned"


class DomainBinding(BaseModel):
    """Read model of a domain binding record."""

    model_config = ConfigDict(from_attributes=True)

    binding_id: str
    domain: str
    tenant_id: str
    state: DomainState
    verification_token: str
    retry_count: int = 0
    poll_count: int = 0
    error_code: str | None = None
    error: str | None = None
    last_checked_at: datetime | None = None
    next_check_at: datetime | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AdvanceResult(BaseModel):
    """What a single ``advance`` call did to a binding."""

    binding_id: str
    from_state: DomainState
    to_state: DomainState
    transitioned: bool
    deferred_reason: str | None = Field(
        default=None,
        description="Why the binding stayed where it is, when it did not move.",
    )
    next_check_at: datetime | None = None
