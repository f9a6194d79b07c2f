"""Shared fixtures for provisioning API tests.

The app is built with :func:`api.main.create_app` and exercised through
``httpx.AsyncClient`` over ``ASGITransport``, which skips the lifespan.  The
database session and component container dependencies are overridden so
every test runs against its own SQLite file with in-memory providers and an
:class:`InlineScheduler` it can drain.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from provisioning_engine.config import Settings
from provisioning_engine.container import ProvisioningContainer, build_container
from provisioning_engine.providers.local import (
    InlineScheduler,
    InMemoryDnsProvider,
    InMemoryHostingPanel,
    LoggingNotifier,
)
from provisioning_engine.state.registry import registry_scope
from provisioning_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.dependencies import get_container, get_db_session
from api.main import create_app

TEMPLATE_ID = "TPL-A"

# ---------------------------------------------------------------------------
# Settings and registry
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine_settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        base_domain="sites.example.com",
        clone_max_attempts=2,
        clone_backoff_base=1.0,
        clone_backoff_max=2.0,
        domain_max_retries=1,
        domain_max_polls=3,
        _env_file=None,  # type: ignore[call-arg]
    )


@pytest_asyncio.fixture()
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "api.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture()
def scheduler() -> InlineScheduler:
    return InlineScheduler()


@pytest.fixture()
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest_asyncio.fixture()
async def container(
    engine_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: InlineScheduler,
    notifier: LoggingNotifier,
) -> ProvisioningContainer:
    built = build_container(
        engine_settings,
        session_factory,
        dns=InMemoryDnsProvider(),
        hosting=InMemoryHostingPanel(),
        notifier=notifier,
        scheduler=scheduler,
    )
    async with registry_scope(session_factory) as registry:
        await registry.templates.upsert(
            template_id=TEMPLATE_ID,
            name="Salon starter",
            canonical_identifier="tplasite",
            canonical_domain="tplasite.sites.example.com",
        )
        await registry.templates.replace_items(
            TEMPLATE_ID,
            [
                ("siteurl", "https://tplasite.sites.example.com"),
                ("blogname", "tplasite"),
                ("widget_text", 'a:1:{s:5:"title";s:11:"Hi tplasite";}'),
            ],
        )
    return built


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    container: ProvisioningContainer,
    session_factory: async_sessionmaker[AsyncSession],
) -> FastAPI:
    """Create a FastAPI app with dependency overrides for testing."""
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_container] = lambda: container
    return application


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    starting a server.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------


def _intent_body(tenant_id: str = "T1", subdomain: str = "acme", **overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "tenant_intent_id": tenant_id,
        "owner_account_id": "owner-1",
        "template_id": TEMPLATE_ID,
        "subdomain": subdomain,
    }
    body.update(overrides)
    return body


@pytest.fixture()
def intent_body() -> Any:
    """Return a builder for ``POST /tenants`` request bodies."""
    return _intent_body


@pytest.fixture()
def provisioned(
    client: AsyncClient,
    container: ProvisioningContainer,
    scheduler: InlineScheduler,
) -> Any:
    """Return a coroutine function that registers, pays for and clones a tenant over HTTP."""

    async def _provision(tenant_id: str = "T1", subdomain: str = "acme") -> dict[str, Any]:
        created = await client.post("/api/v1/tenants", json=_intent_body(tenant_id, subdomain))
        assert created.status_code == 201, created.text
        paid = await client.post(
            "/api/v1/events/payment-confirmed",
            json={"tenant_intent_id": tenant_id, "subscription_id": f"sub-{tenant_id}"},
        )
        assert paid.status_code == 202, paid.text
        await scheduler.drain(container.dispatcher)
        return created.json()

    return _provision
