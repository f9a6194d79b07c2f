"""Subscription grace, suspension and reactivation."""

from provisioning_engine.billing.enforcer import SubscriptionEnforcer

__all__ = ["SubscriptionEnforcer"]
