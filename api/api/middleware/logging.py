"""Access log for the provisioning API.

Every request produces one record on the ``api.access`` logger.  Payment
webhooks usually arrive with an ``X-Correlation-ID`` from the billing
system; it is kept on ``request.state`` and echoed back so operators can
follow one event from the webhook to the clone and domain jobs it queued.
Tenant-scoped routes also log the ``tenant_id`` path parameter.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

_CORRELATION_HEADER = "X-Correlation-ID"
_REDACTED_HEADERS = frozenset({"authorization", "cookie", "x-api-key"})


def _safe_headers(request: Request) -> dict[str, str]:
    """Request headers with credentials replaced by ``***``."""
    return {name: "***" if name.lower() in _REDACTED_HEADERS else value for name, value in request.headers.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Write one access record per request and tag it with a correlation id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            record: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query or None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "tenant_id": request.path_params.get("tenant_id"),
                "identity_kind": getattr(request.state, "identity_kind", "anonymous"),
                "headers": _safe_headers(request),
            }
            level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO
            logger.log(level, "%s %s -> %d", request.method, request.url.path, status_code, extra={"request": record})
