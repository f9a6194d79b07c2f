"""Domain models for the provisioning engine."""

from provisioning_engine.models.clone_job import (
    CloneJob,
    CloneJobStatus,
    CloneOutcome,
    CloneResult,
    derive_idempotency_key,
)
from provisioning_engine.models.domain import (
    AdvanceResult,
    DomainBinding,
    DomainErrorCode,
    DomainState,
)
from provisioning_engine.models.events import (
    HistoryEntity,
    HistoryEvent,
    NotificationKind,
    PaymentConfirmed,
)
from provisioning_engine.models.jobs import JobKind, JobRequest
from provisioning_engine.models.subscription import (
    BillingStatus,
    EnforcementAction,
    EnforcementResult,
    GraceKind,
    SubscriptionState,
)
from provisioning_engine.models.tenant import PaymentIntent, Tenant, TenantState

__all__ = [
    "AdvanceResult",
    "BillingStatus",
    "CloneJob",
    "CloneJobStatus",
    "CloneOutcome",
    "CloneResult",
    "DomainBinding",
    "DomainErrorCode",
    "DomainState",
    "EnforcementAction",
    "EnforcementResult",
    "GraceKind",
    "HistoryEntity",
    "HistoryEvent",
    "JobKind",
    "JobRequest",
    "NotificationKind",
    "PaymentConfirmed",
    "PaymentIntent",
    "SubscriptionState",
    "Tenant",
    "TenantState",
    "derive_idempotency_key",
]
