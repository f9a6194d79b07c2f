"""Custom domain binding lifecycle."""

from provisioning_engine.domains.lifecycle import DomainLifecycleManager

__all__ = ["DomainLifecycleManager"]
