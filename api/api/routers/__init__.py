"""API router modules for the provisioning control plane."""

from __future__ import annotations

from api.routers import domains, events, health, metrics, tenants

__all__ = [
    "domains",
    "events",
    "health",
    "metrics",
    "tenants",
]
