"""Prometheus metrics middleware for HTTP request instrumentation.

Exposes standard RED metrics (Rate, Errors, Duration) as Prometheus
counters and histograms.  Provisioning outcome counters live in
:mod:`provisioning_engine.telemetry.metrics` and share the default registry.

Path normalisation collapses path parameters (e.g. ``/tenants/abc123`` ->
``/tenants/{id}``) to prevent unbounded label cardinality.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "provisioning_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "provisioning_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

# Route segments followed by a caller-chosen identifier.
_ID_SEGMENT_RE = re.compile(r"/(tenants|domains)/[^/]+")


def _normalise_path(path: str) -> str:
    """Collapse tenant and binding ids to prevent cardinality explosion."""
    return _ID_SEGMENT_RE.sub(r"/\1/{id}", path)


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)

        return response
