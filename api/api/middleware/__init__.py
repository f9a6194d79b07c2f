"""Middleware components for the provisioning API."""

from __future__ import annotations

from api.middleware.auth import ServiceTokenMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
    "ServiceTokenMiddleware",
]
