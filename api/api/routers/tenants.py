"""API router for tenant registration, inspection and lifecycle actions."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Query
from provisioning_engine.models import (
    CloneJob,
    CloneResult,
    DomainBinding,
    EnforcementResult,
    HistoryEntity,
    HistoryEvent,
    PaymentIntent,
    SubscriptionState,
    Tenant,
)
from provisioning_engine.state.registry import registry_scope

from api.dependencies import ContainerDep
from api.schemas import (
    BillingStatusRequest,
    DeprovisionRequest,
    DomainRequest,
    TenantDetailResponse,
    TenantHistoryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("", status_code=201)
async def register_tenant(body: PaymentIntent, container: ContainerDep) -> Tenant:
    """Register a payment intent; the tenant starts in ``pending``."""
    return await container.orchestrator.register_payment_intent(body)


@router.get("/{tenant_id}")
async def get_tenant(tenant_id: str, container: ContainerDep) -> TenantDetailResponse:
    """Return the tenant with its latest clone job, bindings and billing state."""
    async with registry_scope(container.session_factory) as registry:
        tenant = await registry.tenants.require(tenant_id)
        job = await registry.clone_jobs.latest_for_tenant(tenant_id)
        bindings = await registry.domains.list_for_tenant(tenant_id)
        subscription = await registry.subscriptions.get(tenant_id)
        return TenantDetailResponse(
            tenant=Tenant.model_validate(tenant),
            host=container.settings.tenant_host(tenant.subdomain),
            clone_job=CloneJob.model_validate(job) if job is not None else None,
            domains=[DomainBinding.model_validate(b) for b in bindings],
            subscription=SubscriptionState.model_validate(subscription) if subscription is not None else None,
        )


@router.get("/{tenant_id}/history")
async def get_tenant_history(
    tenant_id: str,
    container: ContainerDep,
    entity_type: HistoryEntity | None = Query(None, description="Only events for this kind of record."),
    limit: int = Query(200, ge=1, le=1000),
) -> TenantHistoryResponse:
    """Return the tenant's transition history, oldest first."""
    async with registry_scope(container.session_factory) as registry:
        await registry.tenants.require(tenant_id)
        rows = await registry.history.list_for_tenant(tenant_id, entity_type=entity_type, limit=limit)
        return TenantHistoryResponse(
            tenant_id=tenant_id,
            events=[HistoryEvent.model_validate(row) for row in rows],
        )


@router.get("/{tenant_id}/content")
async def list_tenant_content(tenant_id: str, container: ContainerDep) -> list[dict[str, Any]]:
    """Read the tenant's content items.  Reads are allowed in every state."""
    async with registry_scope(container.session_factory) as registry:
        await registry.tenants.require(tenant_id)
        rows = await registry.content.list_items(tenant_id)
        return [{"item_key": row.item_key, "payload": row.payload, "rewritten": row.rewritten} for row in rows]


@router.put("/{tenant_id}/content/{item_key}")
async def put_tenant_content(
    tenant_id: str,
    item_key: str,
    container: ContainerDep,
    payload: Any = Body(..., embed=True),
) -> dict[str, Any]:
    """Write one content item; rejected with 423 while content is locked."""
    async with registry_scope(container.session_factory) as registry:
        row = await registry.content.put_item(tenant_id, item_key, payload)
        return {"item_key": row.item_key, "payload": row.payload, "rewritten": row.rewritten}


@router.post("/{tenant_id}/deprovision")
async def deprovision_tenant(
    tenant_id: str,
    container: ContainerDep,
    body: DeprovisionRequest | None = None,
) -> Tenant:
    """Permanently deprovision the tenant."""
    return await container.orchestrator.deprovision(tenant_id, reason=body.reason if body else None)


@router.post("/{tenant_id}/billing")
async def record_billing_status(
    tenant_id: str,
    body: BillingStatusRequest,
    container: ContainerDep,
) -> EnforcementResult:
    """Apply a billing status change (payment failed, cancelled, resumed)."""
    return await container.enforcer.record_billing_status(tenant_id, body.status, body.effective_at)


@router.post("/{tenant_id}/requeue")
async def requeue_clone(tenant_id: str, container: ContainerDep) -> CloneResult:
    """Restart an escalated tenant's clone with a fresh attempt budget."""
    return await container.cloner.requeue_for_manual_retry(tenant_id)


@router.post("/{tenant_id}/domains", status_code=201)
async def add_domain(tenant_id: str, body: DomainRequest, container: ContainerDep) -> DomainBinding:
    """Bind a custom domain to the tenant."""
    return await container.orchestrator.request_domain(tenant_id, body.domain)
