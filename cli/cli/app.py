"""Provisioning CLI application -- Typer-based operator interface.

Provides commands for preparing the state store, importing templates,
inspecting tenants, retrying failed domains and running the enforcement /
domain sweep.  Human-readable output goes to *stderr* via Rich;
machine-readable output (``--json``) goes to *stdout* so that scripts can
compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import typer
from provisioning_engine.config import Settings, load_settings
from provisioning_engine.container import ProvisioningContainer, build_container
from provisioning_engine.errors import ProvisioningError
from provisioning_engine.models import (
    CloneJob,
    DomainBinding,
    HistoryEvent,
    SubscriptionState,
    Tenant,
)
from provisioning_engine.state.database import get_engine, get_session_factory
from provisioning_engine.state.registry import registry_scope
from rich.console import Console

from cli.display import display_history, display_sweep_report, display_tenant

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="provisioning",
    help="Tenant provisioning - operator tools for the provisioning engine.",
    no_args_is_help=True,
)
console = Console(stderr=True)

from cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log engine activity at DEBUG level.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="State store URL; overrides PROVISIONING_DATABASE_URL.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings(**overrides: Any) -> Settings:
    if _database_url:
        overrides["database_url"] = _database_url
    return load_settings(**overrides)


@asynccontextmanager
async def _open_container(settings: Settings) -> AsyncIterator[ProvisioningContainer]:
    """Build the components over a fresh engine and dispose both on exit."""
    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    try:
        container = build_container(settings, get_session_factory(engine))
        try:
            yield container
        finally:
            await container.close()
    finally:
        await engine.dispose()


def _run(work: Coroutine[Any, Any, T]) -> T:
    """Run *work* to completion, turning provisioning errors into exit code 1."""
    try:
        return asyncio.run(work)
    except ProvisioningError as exc:
        console.print(f"[red]{exc.user_message}[/red]")
        raise typer.Exit(code=1) from exc


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _parse_moment(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid timestamp '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the state store tables if they do not exist.

    Intended for local SQLite and development databases; production
    deployments apply the Alembic migrations instead.
    """
    from provisioning_engine.state.tables import Base

    settings = _settings()

    async def _create() -> None:
        engine = get_engine(settings.database_url)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        finally:
            await engine.dispose()

    _run(_create())
    console.print(f"[green]State store ready[/green] ({'local' if settings.is_local() else 'postgres'})")


# ---------------------------------------------------------------------------
# template-import
# ---------------------------------------------------------------------------


def _load_template_file(path: Path) -> dict[str, Any]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[red]Cannot read template file {path}: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    missing = [
        key
        for key in ("template_id", "name", "canonical_identifier", "canonical_domain", "items")
        if key not in document
    ]
    if missing:
        console.print(f"[red]Template file {path} is missing: {', '.join(missing)}[/red]")
        raise typer.Exit(code=3)
    if not isinstance(document["items"], dict):
        console.print("[red]'items' must map content keys to payloads[/red]")
        raise typer.Exit(code=3)
    return document


@app.command("template-import")
def template_import(
    path: Path = typer.Argument(
        ...,
        help="JSON file with template_id, name, canonical_identifier, canonical_domain and items.",
        exists=True,
        dir_okay=False,
    ),
) -> None:
    """Import (or replace) a template and its content items."""
    document = _load_template_file(path)
    settings = _settings()

    async def _import() -> int:
        async with _open_container(settings) as container:
            async with registry_scope(container.session_factory) as registry:
                await registry.templates.upsert(
                    template_id=document["template_id"],
                    name=document["name"],
                    canonical_identifier=document["canonical_identifier"],
                    canonical_domain=document["canonical_domain"],
                )
                return await registry.templates.replace_items(
                    document["template_id"],
                    document["items"].items(),
                )

    count = _run(_import())
    if _json_output:
        _emit_json({"template_id": document["template_id"], "items": count})
    else:
        console.print(f"Imported template [bold]{document['template_id']}[/bold] with {count} item(s)")


# ---------------------------------------------------------------------------
# tenant-show
# ---------------------------------------------------------------------------


@app.command("tenant-show")
def tenant_show(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    history: bool = typer.Option(
        False,
        "--history",
        help="Also list the tenant's transition history.",
    ),
) -> None:
    """Show a tenant with its clone job, domains and billing state."""
    settings = _settings()

    async def _load() -> dict[str, Any]:
        async with _open_container(settings) as container:
            async with registry_scope(container.session_factory) as registry:
                tenant = await registry.tenants.require(tenant_id)
                job = await registry.clone_jobs.latest_for_tenant(tenant_id)
                subscription = await registry.subscriptions.get(tenant_id)
                return {
                    "tenant": Tenant.model_validate(tenant),
                    "host": settings.tenant_host(tenant.subdomain),
                    "clone_job": CloneJob.model_validate(job) if job is not None else None,
                    "domains": [
                        DomainBinding.model_validate(b) for b in await registry.domains.list_for_tenant(tenant_id)
                    ],
                    "subscription": (
                        SubscriptionState.model_validate(subscription) if subscription is not None else None
                    ),
                    "history": (
                        [HistoryEvent.model_validate(e) for e in await registry.history.list_for_tenant(tenant_id)]
                        if history
                        else []
                    ),
                }

    detail = _run(_load())

    if _json_output:
        payload: dict[str, Any] = {
            "tenant": detail["tenant"].model_dump(mode="json"),
            "host": detail["host"],
            "clone_job": detail["clone_job"].model_dump(mode="json") if detail["clone_job"] else None,
            "domains": [b.model_dump(mode="json") for b in detail["domains"]],
            "subscription": detail["subscription"].model_dump(mode="json") if detail["subscription"] else None,
        }
        if history:
            payload["history"] = [e.model_dump(mode="json") for e in detail["history"]]
        _emit_json(payload)
        return

    display_tenant(
        console,
        detail["tenant"],
        host=detail["host"],
        clone_job=detail["clone_job"],
        domains=detail["domains"],
        subscription=detail["subscription"],
    )
    if history:
        display_history(console, detail["history"])


# ---------------------------------------------------------------------------
# domain-retry
# ---------------------------------------------------------------------------


@app.command("domain-retry")
def domain_retry(
    binding_id: str = typer.Argument(..., help="Identifier of the failed binding."),
) -> None:
    """Restart a failed custom domain at ``pending_dns``.

    The next sweep picks the binding up again.
    """
    settings = _settings()

    async def _retry() -> DomainBinding:
        async with _open_container(settings) as container:
            return await container.domains.retry(binding_id)

    binding = _run(_retry())
    if _json_output:
        _emit_json(binding.model_dump(mode="json"))
    else:
        console.print(f"Binding [bold]{binding.domain}[/bold] restarted at {binding.state.value}")


# ---------------------------------------------------------------------------
# sweep / worker
# ---------------------------------------------------------------------------


@app.command()
def sweep(
    at: str | None = typer.Option(
        None,
        "--at",
        help="Evaluate deadlines as of this ISO-8601 time instead of now.",
    ),
) -> None:
    """Run one enforcement and domain sweep tick, then exit."""
    moment = _parse_moment(at)
    settings = _settings()

    async def _tick() -> Any:
        async with _open_container(settings) as container:
            return await container.sweeper.run_once(moment)

    report = _run(_tick())
    if _json_output:
        _emit_json(
            {
                "suspended": report.suspended,
                "domains_advanced": report.domains_advanced,
                "clones_rescheduled": report.clones_rescheduled,
                "jobs_run": report.jobs_run,
            }
        )
    else:
        display_sweep_report(console, report)


@app.command()
def worker(
    interval: float | None = typer.Option(
        None,
        "--interval",
        help="Seconds between sweep ticks; defaults to PROVISIONING_SWEEP_INTERVAL_SECONDS.",
        min=1.0,
    ),
) -> None:
    """Run the sweep loop in the foreground until interrupted."""
    settings = _settings(sweep_interval_seconds=interval) if interval else _settings()

    async def _work() -> None:
        async with _open_container(settings) as container:
            await container.sweeper.start()
            await asyncio.Event().wait()

    console.print(f"Sweep worker running every {settings.sweep_interval_seconds:.0f}s [dim](Ctrl+C to stop)[/dim]")
    try:
        _run(_work())
    except KeyboardInterrupt:
        console.print("[yellow]Sweep worker stopped.[/yellow]")
