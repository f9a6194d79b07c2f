"""``provisioning serve`` -- run the control-plane API.

Starts the FastAPI app under uvicorn.  With the default settings the state
store is a local SQLite file, tables are created on startup and the sweep
loop runs inside the API process, so nothing else is needed for local use.
"""

from __future__ import annotations

import logging
import os

import typer
from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)


def serve_command(
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
    no_sweeper: bool = typer.Option(
        False,
        "--no-sweeper",
        help="Do not run the sweep loop in the API process (use a separate worker).",
    ),
) -> None:
    """Start the provisioning API server."""
    console = Console(stderr=True)

    from cli.app import _database_url

    if _database_url:
        os.environ["PROVISIONING_DATABASE_URL"] = _database_url
    if no_sweeper:
        os.environ["API_RUN_SWEEPER"] = "false"

    console.print(_build_endpoints_table(host, port, sweeper=not no_sweeper))

    import uvicorn

    config = uvicorn.Config(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )
    server = uvicorn.Server(config)
    try:
        server.run()
    except KeyboardInterrupt:
        console.print("[yellow]API server stopped.[/yellow]")


def _build_endpoints_table(host: str, port: int, *, sweeper: bool) -> Table:
    """Build a Rich table listing the endpoints the server will expose."""
    base = f"http://{host}:{port}"
    table = Table(title="Provisioning API", show_header=True, header_style="bold")
    table.add_column("Endpoint", style="bold")
    table.add_column("URL")
    table.add_row("API", f"{base}/api/v1")
    table.add_row("OpenAPI docs", f"{base}/docs")
    table.add_row("Readiness", f"{base}/ready")
    table.add_row("Metrics", f"{base}/metrics")
    table.add_row("Sweep loop", "in-process" if sweeper else "[dim]disabled[/dim]")
    return table
