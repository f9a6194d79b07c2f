"""Inbound events, outbound notification kinds, and history records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PaymentConfirmed(BaseModel):
    """A verified payment confirmation from the billing webhook layer."""

    tenant_intent_id: str = Field(..., min_length=1, max_length=64)
    subscription_id: str = Field(..., min_length=1, max_length=128)


class NotificationKind(str, Enum):
    """Events delivered through the notification capability."""

    PROVISIONED = "provisioned"
    CLONE_FAILED = "clone_failed"
    OPERATOR_ESCALATION = "operator_escalation"
    DOMAIN_ACTIVE = "domain_active"
    DOMAIN_FAILED = "domain_failed"
    BILLING_GRACE_STARTED = "billing_grace_started"
    CANCELLATION_GRACE_STARTED = "cancellation_grace_started"
    SUSPENDED = "suspended"
    REACTIVATED = "reactivated"


class HistoryEntity(str, Enum):
    TENANT = "tenant"
    CLONE_JOB = "clone_job"
    DOMAIN = "domain"
    SUBSCRIPTION = "subscription"


class HistoryEvent(BaseModel):
    """One immutable entry of the transition history log."""

    model_config = ConfigDict(from_attributes=True)

    event_id: str
    tenant_id: str
    entity_type: HistoryEntity
    entity_id: str
    event_type: str
    from_state: str | None = None
    to_state: str | None = None
    job_id: str | None = None
    detail: str | None = None
    created_at: datetime | None = None
