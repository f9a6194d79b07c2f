"""Rich output formatting for the provisioning CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from provisioning_engine.jobs.sweeper import SweepReport
    from provisioning_engine.models import (
        CloneJob,
        DomainBinding,
        HistoryEvent,
        SubscriptionState,
        Tenant,
    )


# ---------------------------------------------------------------------------
# State colour mapping
# ---------------------------------------------------------------------------

_STATE_COLOURS: dict[str, str] = {
    # Tenants
    "pending": "dim",
    "cloning": "yellow",
    "active_pending_domain": "cyan",
    "active": "green",
    "grace_billing": "yellow",
    "grace_cancelled": "yellow",
    "suspended": "red",
    "manual_intervention": "bold red",
    "deprovisioned": "dim red",
    # Domain bindings
    "pending_dns": "dim",
    "pending_ssl": "yellow",
    "verifying": "yellow",
    "ready": "cyan",
    "failed": "red",
    # Clone jobs
    "queued": "dim",
    "running": "yellow",
    "rewriting": "yellow",
    "completed": "green",
}


def _coloured_state(state: str) -> str:
    """Return a Rich markup string with the state colour-coded."""
    colour = _STATE_COLOURS.get(state, "white")
    return f"[{colour}]{state}[/{colour}]"


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value is not None else "-"


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


def display_tenant(
    console: Console,
    tenant: Tenant,
    *,
    host: str,
    clone_job: CloneJob | None = None,
    domains: Sequence[DomainBinding] = (),
    subscription: SubscriptionState | None = None,
) -> None:
    """Render a tenant overview panel followed by its custom domains.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    tenant:
        The tenant to display.
    host:
        Platform hostname the tenant is served on.
    clone_job:
        The tenant's latest clone job, if any.
    domains:
        Custom domain bindings for the tenant.
    subscription:
        The tenant's billing and grace state, if recorded.
    """
    lines = [
        f"[bold]Tenant:[/bold]    {tenant.tenant_id}",
        f"[bold]State:[/bold]     {_coloured_state(tenant.state.value)}",
        f"[bold]Host:[/bold]      {host}",
        f"[bold]Template:[/bold]  {tenant.template_id}",
        f"[bold]Owner:[/bold]     {tenant.owner_account_id}",
    ]
    if clone_job is not None:
        lines.append(
            f"[bold]Clone:[/bold]     {_coloured_state(clone_job.status.value)} "
            f"(attempt {clone_job.attempt_count}, {clone_job.items_rewritten}/{clone_job.items_copied} rewritten)"
        )
    if subscription is not None:
        billing = subscription.billing_status.value
        if subscription.grace_deadline is not None:
            billing += f", grace until {_fmt_time(subscription.grace_deadline)}"
        lines.append(f"[bold]Billing:[/bold]   {billing}")
    if tenant.last_error:
        lines.append(f"[bold]Error:[/bold]     [red]{tenant.last_error}[/red]")

    console.print(Panel("\n".join(lines), title="Tenant", border_style="blue"))

    if not domains:
        console.print("[dim]No custom domains.[/dim]")
        return

    table = Table(title="Custom Domains")
    table.add_column("Binding", style="dim", max_width=16)
    table.add_column("Domain", style="bold")
    table.add_column("State")
    table.add_column("Next Check")
    table.add_column("Error")
    for binding in domains:
        table.add_row(
            binding.binding_id[:16],
            binding.domain,
            _coloured_state(binding.state.value),
            _fmt_time(binding.next_check_at),
            binding.error or "",
        )
    console.print(table)


def display_history(console: Console, events: Sequence[HistoryEvent]) -> None:
    """Render a tenant's transition history, oldest first."""
    if not events:
        console.print("[yellow]No history recorded.[/yellow]")
        return

    table = Table(title="History")
    table.add_column("When")
    table.add_column("Entity")
    table.add_column("Event")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Detail", max_width=48)
    for event in events:
        table.add_row(
            _fmt_time(event.created_at),
            event.entity_type.value,
            event.event_type,
            event.from_state or "-",
            _coloured_state(event.to_state) if event.to_state else "-",
            event.detail or "",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def display_sweep_report(console: Console, report: SweepReport) -> None:
    """Render what one sweep tick did."""
    table = Table(title="Sweep")
    table.add_column("Step")
    table.add_column("Count", justify="right")
    table.add_row("Tenants suspended", str(report.suspended))
    table.add_row("Domains advanced", str(report.domains_advanced))
    table.add_row("Clones rescheduled", str(report.clones_rescheduled))
    table.add_row("Jobs run", str(report.jobs_run))
    console.print(table)
