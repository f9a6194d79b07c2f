"""API router for custom domain bindings."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from provisioning_engine.models import AdvanceResult, DomainBinding

from api.dependencies import ContainerDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/domains", tags=["domains"])


@router.get("/{binding_id}")
async def get_binding(binding_id: str, container: ContainerDep) -> DomainBinding:
    return await container.domains.get(binding_id)


@router.post("/{binding_id}/advance")
async def advance_binding(binding_id: str, container: ContainerDep) -> AdvanceResult:
    """Attempt the binding's next lifecycle step now."""
    return await container.domains.advance(binding_id)


@router.post("/{binding_id}/retry")
async def retry_binding(binding_id: str, container: ContainerDep) -> DomainBinding:
    """Restart a failed binding at ``pending_dns``."""
    return await container.domains.retry(binding_id)
