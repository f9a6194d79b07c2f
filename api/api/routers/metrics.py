"""``GET /metrics`` for the Prometheus scraper.

Serves the clone, domain, billing and HTTP collectors registered in
``provisioning_engine.telemetry.metrics`` and ``api.middleware.prometheus``.
Mounted at the root rather than under ``/api/v1`` and listed in the auth
middleware's public paths, so scrapers need no service token.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def prometheus_metrics() -> PlainTextResponse:
    return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
