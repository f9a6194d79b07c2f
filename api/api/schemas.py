"""Shared Pydantic request and response models for API endpoints.

Read models from :mod:`provisioning_engine.models` are returned directly
where they fit; the schemas here cover request bodies and composite views.
"""

from __future__ import annotations

from datetime import datetime

from provisioning_engine.models import (
    BillingStatus,
    CloneJob,
    DomainBinding,
    HistoryEvent,
    SubscriptionState,
    Tenant,
)
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Tenant schemas
# ---------------------------------------------------------------------------


class TenantDetailResponse(BaseModel):
    """A tenant with its latest clone job, bindings and billing state."""

    tenant: Tenant
    host: str
    clone_job: CloneJob | None = None
    domains: list[DomainBinding] = Field(default_factory=list)
    subscription: SubscriptionState | None = None


class TenantHistoryResponse(BaseModel):
    tenant_id: str
    events: list[HistoryEvent] = Field(default_factory=list)


class DeprovisionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=512, description="Why the tenant is being removed.")


class BillingStatusRequest(BaseModel):
    """Request body for recording a subscription billing status change."""

    status: BillingStatus = Field(..., description="New billing status reported by the billing provider.")
    effective_at: datetime | None = Field(
        default=None,
        description="When the change took effect; defaults to now.",
    )


# ---------------------------------------------------------------------------
# Domain schemas
# ---------------------------------------------------------------------------


class DomainRequest(BaseModel):
    domain: str = Field(..., min_length=3, max_length=253, description="Custom domain to bind, e.g. shop.acme.com.")


# ---------------------------------------------------------------------------
# Event schemas
# ---------------------------------------------------------------------------


class PaymentDecisionResponse(BaseModel):
    """What the orchestrator did with a payment confirmation."""

    tenant_id: str
    decision: str
