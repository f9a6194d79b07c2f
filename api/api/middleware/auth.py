"""Service-token authentication middleware.

The control plane is called by other services (the billing webhook layer,
the site dashboard, operator tooling), never directly by browsers, so a
single shared bearer token is enough.  When ``API_SERVICE_TOKEN`` is unset
the middleware lets every request through.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    }
)


def _is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS


class ServiceTokenMiddleware(BaseHTTPMiddleware):
    """Enforce ``Authorization: Bearer <token>`` against a shared secret.

    On success ``request.state.identity_kind`` is set to ``"service"``.
    """

    def __init__(self, app: Any, *, token: str | None) -> None:
        super().__init__(app)
        self._token = token

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._token or _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing Authorization header"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        if not secrets.compare_digest(parts[1].encode(), self._token.encode()):
            logger.warning("Rejected request to %s: invalid service token", request.url.path)
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})

        request.state.identity_kind = "service"
        return await call_next(request)
