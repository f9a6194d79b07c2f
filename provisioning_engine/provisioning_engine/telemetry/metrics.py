"""Prometheus counters for provisioning outcomes.

Label values are bounded enums (clone outcomes, domain states, enforcer
actions) so cardinality stays fixed regardless of tenant count.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

CLONE_JOBS_TOTAL = Counter(
    "provisioning_clone_jobs_total",
    "Template clone attempts by outcome",
    ["outcome"],
)

CLONE_DURATION = Histogram(
    "provisioning_clone_duration_seconds",
    "Wall-clock duration of a clone attempt",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

CONTENT_ITEMS_REWRITTEN = Counter(
    "provisioning_content_items_rewritten_total",
    "Content items whose value changed during reference rewriting",
)

DOMAIN_TRANSITIONS_TOTAL = Counter(
    "provisioning_domain_transitions_total",
    "Domain binding transitions by target state",
    ["to_state"],
)

DOMAIN_DEFERRALS_TOTAL = Counter(
    "provisioning_domain_deferrals_total",
    "Domain advance calls that rescheduled instead of transitioning",
    ["state"],
)

ENFORCER_ACTIONS_TOTAL = Counter(
    "provisioning_enforcer_actions_total",
    "Subscription enforcer actions",
    ["action"],
)

PAYMENT_EVENTS_TOTAL = Counter(
    "provisioning_payment_events_total",
    "Payment confirmations by orchestrator decision",
    ["decision"],
)
