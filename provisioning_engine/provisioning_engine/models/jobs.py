"""Background job requests handed to the scheduler capability."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobKind(str, Enum):
    CLONE_TEMPLATE = "clone_template"
    ADVANCE_DOMAIN = "advance_domain"


class JobRequest(BaseModel):
    """A unit of deferred work.

    ``run_at`` is advisory: schedulers may run a job later than requested,
    never earlier.  Handlers are idempotent, so at-least-once delivery is
    safe.
    """

    kind: JobKind
    payload: dict[str, Any] = Field(default_factory=dict)
    run_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def clone(
        cls,
        *,
        template_id: str,
        tenant_id: str,
        idempotency_key: str,
        run_at: datetime | None = None,
    ) -> JobRequest:
        payload = {
            "template_id": template_id,
            "tenant_id": tenant_id,
            "idempotency_key": idempotency_key,
        }
        if run_at is None:
            return cls(kind=JobKind.CLONE_TEMPLATE, payload=payload)
        return cls(kind=JobKind.CLONE_TEMPLATE, payload=payload, run_at=run_at)

    @classmethod
    def advance(cls, *, binding_id: str, run_at: datetime | None = None) -> JobRequest:
        payload = {"binding_id": binding_id}
        if run_at is None:
            return cls(kind=JobKind.ADVANCE_DOMAIN, payload=payload)
        return cls(kind=JobKind.ADVANCE_DOMAIN, payload=payload, run_at=run_at)
