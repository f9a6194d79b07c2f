"""Health-check and readiness probe endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is a Kubernetes-style
readiness probe registered at the application root (no version prefix) so
that orchestrators and load-balancers can gate traffic independently of the
API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.config import API_VERSION
from api.dependencies import ContainerDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, container: ContainerDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so that load-balancers see the service as alive; the
    ``db`` and ``sweeper`` fields report on dependencies.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": API_VERSION,
        "db": "ok",
        "sweeper": "running" if container.sweeper.running else "stopped",
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    """Kubernetes-style readiness probe.

    Returns HTTP 200 with ``"ready"`` or HTTP 503 with ``"not_ready"`` if
    the database is unreachable.
    """
    checks: dict[str, str] = {"db": "ok"}
    overall = "ready"
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    return JSONResponse(
        status_code=200 if overall == "ready" else 503,
        content={"status": overall, "version": API_VERSION, "checks": checks},
    )
