"""Subscription billing state used by the enforcer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class BillingStatus(str, Enum):
    CURRENT = "current"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class GraceKind(str, Enum):
    NONE = "none"
    BILLING = "billing"
    CANCELLATION = "cancellation"


class SubscriptionState(BaseModel):
    """Read model of a tenant's subscription enforcement record."""

    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    billing_status: BillingStatus = BillingStatus.CURRENT
    grace_kind: GraceKind = GraceKind.NONE
    grace_started_at: datetime | None = None
    grace_deadline: datetime | None = None
    resume_state: str | None = None
    suspension_notified: bool = False
    version: int = 0
    updated_at: datetime | None = None


class EnforcementAction(str, Enum):
    """What the enforcer did for one tenant."""

    NONE = "none"
    BILLING_GRACE_STARTED = "billing_grace_started"
    CANCELLATION_GRACE_STARTED = "cancellation_grace_started"
    GRACE_CLEARED = "grace_cleared"
    SUSPENDED = "suspended"
    REACTIVATED = "reactivated"


class EnforcementResult(BaseModel):
    tenant_id: str
    action: EnforcementAction
    tenant_state: str | None = None
    grace_deadline: datetime | None = None
    notified: bool = False
