"""Inbound billing events.

Signature verification and payload translation happen in the billing
webhook layer in front of this service; by the time an event arrives here
it is trusted and already in the provisioning vocabulary.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from provisioning_engine.models import PaymentConfirmed

from api.dependencies import ContainerDep
from api.schemas import PaymentDecisionResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/payment-confirmed", status_code=202)
async def payment_confirmed(body: PaymentConfirmed, container: ContainerDep) -> PaymentDecisionResponse:
    """Accept a payment confirmation; cloning continues in the background."""
    decision = await container.orchestrator.handle_payment_confirmed(body)
    return PaymentDecisionResponse(tenant_id=body.tenant_intent_id, decision=decision)
