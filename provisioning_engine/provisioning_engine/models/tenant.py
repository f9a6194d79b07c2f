"""Tenant lifecycle models.

A tenant moves through a fixed set of states.  ``TENANT_TRANSITIONS`` is the
single source of truth for which moves are legal; the registry refuses any
transition not listed here.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TenantState(str, Enum):
    """Lifecycle state of a provisioned tenant."""

    PENDING = "pending"
    CLONING = "cloning"
    ACTIVE_PENDING_DOMAIN = "active_pending_domain"
    ACTIVE = "active"
    GRACE_BILLING = "grace_billing"
    GRACE_CANCELLED = "grace_cancelled"
    SUSPENDED = "suspended"
    MANUAL_INTERVENTION = "manual_intervention"
    DEPROVISIONED = "deprovisioned"


_S = TenantState

TENANT_TRANSITIONS: dict[TenantState, frozenset[TenantState]] = {
    _S.PENDING: frozenset({_S.CLONING, _S.SUSPENDED, _S.DEPROVISIONED}),
    _S.CLONING: frozenset(
        {_S.ACTIVE_PENDING_DOMAIN, _S.MANUAL_INTERVENTION, _S.SUSPENDED, _S.DEPROVISIONED}
    ),
    _S.ACTIVE_PENDING_DOMAIN: frozenset(
        {_S.ACTIVE, _S.GRACE_BILLING, _S.GRACE_CANCELLED, _S.SUSPENDED, _S.DEPROVISIONED}
    ),
    _S.ACTIVE: frozenset({_S.GRACE_BILLING, _S.GRACE_CANCELLED, _S.SUSPENDED, _S.DEPROVISIONED}),
    _S.GRACE_BILLING: frozenset(
        {_S.ACTIVE, _S.ACTIVE_PENDING_DOMAIN, _S.GRACE_CANCELLED, _S.SUSPENDED, _S.DEPROVISIONED}
    ),
    _S.GRACE_CANCELLED: frozenset({_S.ACTIVE, _S.ACTIVE_PENDING_DOMAIN, _S.SUSPENDED, _S.DEPROVISIONED}),
    _S.SUSPENDED: frozenset({_S.ACTIVE, _S.ACTIVE_PENDING_DOMAIN, _S.DEPROVISIONED}),
    _S.MANUAL_INTERVENTION: frozenset({_S.CLONING, _S.SUSPENDED, _S.DEPROVISIONED}),
    _S.DEPROVISIONED: frozenset(),
}

# States in which tenant content may not be written (reads stay available).
CONTENT_LOCKED_STATES: frozenset[TenantState] = frozenset(
    {_S.GRACE_CANCELLED, _S.SUSPENDED, _S.DEPROVISIONED}
)

# States that count as "provisioned and serving" for grace/suspension logic.
SERVING_STATES: frozenset[TenantState] = frozenset({_S.ACTIVE_PENDING_DOMAIN, _S.ACTIVE})


def can_transition(from_state: TenantState, to_state: TenantState) -> bool:
    """Return ``True`` when *from_state* -> *to_state* is a legal move."""
    return to_state in TENANT_TRANSITIONS[from_state]


class Tenant(BaseModel):
    """Read model of a tenant record."""

    model_config = ConfigDict(from_attributes=True)

    tenant_id: str = Field(..., min_length=1, description="Unique tenant identifier.")
    owner_account_id: str = Field(..., min_length=1, description="Account that owns the tenant.")
    subscription_id: str | None = Field(default=None, description="Billing subscription identifier.")
    state: TenantState = Field(default=TenantState.PENDING, description="Current lifecycle state.")
    template_id: str = Field(..., min_length=1, description="Template the tenant is cloned from.")
    subdomain: str = Field(..., min_length=1, description="Tenant subdomain label.")
    last_error: str | None = Field(default=None, description="Last user-visible provisioning error.")
    active_clone_job_id: str | None = Field(
        default=None,
        description="Clone job currently in flight for this tenant, if any.",
    )
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaymentIntent(BaseModel):
    """First payment-intent receipt; creates the tenant in ``pending``."""

    tenant_intent_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    owner_account_id: str = Field(..., min_length=1, max_length=128)
    template_id: str = Field(..., min_length=1, max_length=64)
    subdomain: str = Field(
        ...,
        min_length=1,
        max_length=63,
        pattern=r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$",
        description="DNS label used for the tenant host.",
    )
