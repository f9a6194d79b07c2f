"""Clone job models and idempotency key derivation."""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CloneJobStatus(str, Enum):
    """Lifecycle state of a template clone job."""

    QUEUED = "queued"
    RUNNING = "running"
    REWRITING = "rewriting"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES: frozenset[CloneJobStatus] = frozenset(
    {CloneJobStatus.QUEUED, CloneJobStatus.RUNNING, CloneJobStatus.REWRITING}
)


def derive_idempotency_key(tenant_id: str, subscription_id: str) -> str:
    """Derive the clone idempotency key for a subscription activation.

    The key depends only on the activation event's identity, so every
    redelivery of the same event maps onto the same clone job.
    """
    hasher = hashlib.sha256()
    for part in ("subscription-activation", tenant_id, subscription_id):
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    return hasher.hexdigest()[:40]


class CloneJob(BaseModel):
    """Read model of a clone job record."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    tenant_id: str
    template_id: str
    idempotency_key: str
    status: CloneJobStatus
    attempt_count: int = 0
    retryable: bool = True
    error: str | None = None
    items_copied: int = 0
    items_rewritten: int = 0
    discarded: bool = False
    next_attempt_at: datetime | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None


class CloneOutcome(str, Enum):
    """What a ``clone_template`` call did."""

    COMPLETED = "completed"
    CACHED = "cached"
    IN_PROGRESS = "in_progress"
    RETRY_SCHEDULED = "retry_scheduled"
    ESCALATED = "escalated"
    DISCARDED = "discarded"


class CloneResult(BaseModel):
    """Result returned by the template cloner."""

    outcome: CloneOutcome
    job_id: str
    tenant_id: str
    status: CloneJobStatus
    attempt_count: int = 0
    items_copied: int = 0
    items_rewritten: int = 0
    error: str | None = Field(default=None, description="User-visible failure, when the attempt failed.")
