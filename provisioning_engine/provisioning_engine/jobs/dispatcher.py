"""Worker-side entry point for scheduled jobs."""

from __future__ import annotations

import logging
from typing import Any

from provisioning_engine.cloner.template_cloner import TemplateCloner
from provisioning_engine.domains.lifecycle import DomainLifecycleManager
from provisioning_engine.errors import BindingNotFound, CloneAttemptsExhausted, InvalidTransition, TenantNotFound
from provisioning_engine.models.jobs import JobKind, JobRequest

logger = logging.getLogger(__name__)


class JobDispatcher:
    """Routes a :class:`JobRequest` to the component that handles its kind.

    Handlers are idempotent, so a job delivered twice is harmless.  Jobs
    that can no longer apply (the tenant moved on, the binding vanished)
    are logged and dropped instead of failing the worker.
    """

    def __init__(self, *, cloner: TemplateCloner, domains: DomainLifecycleManager) -> None:
        self._cloner = cloner
        self._domains = domains

    async def dispatch(self, job: JobRequest) -> Any:
        payload = job.payload
        try:
            if job.kind == JobKind.CLONE_TEMPLATE:
                return await self._cloner.clone_template(
                    payload["template_id"],
                    payload["tenant_id"],
                    payload["idempotency_key"],
                )
            if job.kind == JobKind.ADVANCE_DOMAIN:
                return await self._domains.advance(payload["binding_id"])
        except (CloneAttemptsExhausted, InvalidTransition, TenantNotFound, BindingNotFound) as exc:
            logger.info("Dropping %s job %s: %s", job.kind.value, payload, exc.user_message)
            return None

        raise ValueError(f"Unknown job kind: {job.kind!r}")
