"""Tests for cli/cli/display.py -- Rich output formatting.

Rendered output is captured via a Console writing to a StringIO buffer.
"""

from __future__ import annotations

import io
from datetime import UTC, datetime

from provisioning_engine.jobs.sweeper import SweepReport
from provisioning_engine.models import (
    CloneJob,
    CloneJobStatus,
    DomainBinding,
    DomainState,
    HistoryEntity,
    HistoryEvent,
    SubscriptionState,
    Tenant,
    TenantState,
)
from rich.console import Console

from cli.display import (
    _STATE_COLOURS,
    _coloured_state,
    display_history,
    display_sweep_report,
    display_tenant,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _capture_console() -> tuple[Console, io.StringIO]:
    buf = io.StringIO()
    console = Console(file=buf, no_color=True, highlight=False, width=140)
    return console, buf


def _tenant(state: TenantState = TenantState.ACTIVE, last_error: str | None = None) -> Tenant:
    return Tenant(
        tenant_id="T1",
        owner_account_id="owner-1",
        state=state,
        template_id="TPL-A",
        subdomain="acme",
        last_error=last_error,
    )


class TestColouredState:
    def test_known_state(self) -> None:
        assert _coloured_state("active") == "[green]active[/green]"

    def test_unknown_state_is_white(self) -> None:
        assert _coloured_state("mystery") == "[white]mystery[/white]"

    def test_every_tenant_and_domain_state_has_colour(self) -> None:
        for state in list(TenantState) + list(DomainState):
            assert state.value in _STATE_COLOURS


class TestDisplayTenant:
    def test_panel_and_domains(self) -> None:
        console, buf = _capture_console()
        binding = DomainBinding(
            binding_id="b-123",
            domain="shop.acme.com",
            tenant_id="T1",
            state=DomainState.FAILED,
            verification_token="tok",
            error="dns: record refused",
        )
        job = CloneJob(
            job_id="job-1",
            tenant_id="T1",
            template_id="TPL-A",
            idempotency_key="key",
            status=CloneJobStatus.COMPLETED,
            attempt_count=1,
            items_copied=5,
            items_rewritten=4,
        )
        subscription = SubscriptionState(tenant_id="T1", grace_deadline=NOW)

        display_tenant(
            console,
            _tenant(),
            host="acme.sites.example.com",
            clone_job=job,
            domains=[binding],
            subscription=subscription,
        )

        output = buf.getvalue()
        assert "acme.sites.example.com" in output
        assert "4/5 rewritten" in output
        assert "grace until 2026-03-01 12:00" in output
        assert "shop.acme.com" in output
        assert "dns: record refused" in output

    def test_no_domains_and_last_error(self) -> None:
        console, buf = _capture_console()

        display_tenant(
            console,
            _tenant(TenantState.MANUAL_INTERVENTION, last_error="clone: attempts exhausted"),
            host="acme.sites.example.com",
        )

        output = buf.getvalue()
        assert "manual_intervention" in output
        assert "clone: attempts exhausted" in output
        assert "No custom domains" in output


class TestDisplayHistory:
    def test_rows(self) -> None:
        console, buf = _capture_console()
        events = [
            HistoryEvent(
                event_id="e1",
                tenant_id="T1",
                entity_type=HistoryEntity.TENANT,
                entity_id="T1",
                event_type="transition",
                from_state="active",
                to_state="grace_billing",
                detail="payment failed",
                created_at=NOW,
            )
        ]

        display_history(console, events)

        output = buf.getvalue()
        assert "grace_billing" in output
        assert "payment failed" in output
        assert "2026-03-01 12:00" in output

    def test_empty(self) -> None:
        console, buf = _capture_console()

        display_history(console, [])

        assert "No history recorded" in buf.getvalue()


class TestDisplaySweepReport:
    def test_counts(self) -> None:
        console, buf = _capture_console()

        display_sweep_report(console, SweepReport(suspended=2, domains_advanced=3))

        output = buf.getvalue()
        assert "Tenants suspended" in output
        assert "2" in output
        assert "3" in output
