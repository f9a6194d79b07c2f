"""State persistence layer using PostgreSQL (SQLite in local mode)."""

from provisioning_engine.state.database import get_engine, get_session_factory
from provisioning_engine.state.registry import Registry, registry_scope
from provisioning_engine.state.repository import (
    CloneJobRepository,
    ContentRepository,
    DomainBindingRepository,
    HistoryRepository,
    SubscriptionRepository,
    TemplateRepository,
    TenantRepository,
)

__all__ = [
    "CloneJobRepository",
    "ContentRepository",
    "DomainBindingRepository",
    "HistoryRepository",
    "Registry",
    "SubscriptionRepository",
    "TemplateRepository",
    "TenantRepository",
    "get_engine",
    "get_session_factory",
    "registry_scope",
]
