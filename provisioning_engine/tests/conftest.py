"""Shared fixtures for provisioning engine tests.

Every test gets its own SQLite database file under ``tmp_path`` so that
separate sessions (and therefore separate transactions) see the same data,
which is what the conditional-update concurrency model needs.  External
capabilities are the in-memory providers; jobs go to an
:class:`InlineScheduler` that tests drain explicitly.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from provisioning_engine.config import Settings
from provisioning_engine.container import ProvisioningContainer, build_container
from provisioning_engine.models import PaymentConfirmed, PaymentIntent, Tenant
from provisioning_engine.providers.local import (
    InlineScheduler,
    InMemoryDnsProvider,
    InMemoryHostingPanel,
    LoggingNotifier,
)
from provisioning_engine.state.registry import registry_scope
from provisioning_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Sample template
# ---------------------------------------------------------------------------

TEMPLATE_ID = "TPL-A"
CANONICAL_IDENTIFIER = "tplasite"
CANONICAL_DOMAIN = "tplasite.sites.example.com"

# Length-prefixed payloads referencing the template identity.
SERIALISED_WIDGET = 'a:1:{s:5:"title";s:11:"Hi tplasite";}'
NESTED_SERIALISED = 'a:1:{s:5:"inner";s:19:"s:11:"Hi tplasite";";}'

TEMPLATE_ITEMS: list[tuple[str, Any]] = [
    ("siteurl", f"https://{CANONICAL_DOMAIN}"),
    ("blogname", CANONICAL_IDENTIFIER),
    ("widget_text", SERIALISED_WIDGET),
    ("theme_mods", {"header": NESTED_SERIALISED, "logo": f"/uploads/{CANONICAL_IDENTIFIER}/logo.png"}),
    ("colours", {"primary": "blue", "accent": "orange"}),
]


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    """Settings with small budgets so retry and timeout paths are reachable."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{db_path}",
        base_domain="sites.example.com",
        clone_max_attempts=3,
        clone_backoff_base=1.0,
        clone_backoff_max=4.0,
        domain_max_retries=2,
        domain_max_polls=4,
        domain_poll_interval=60.0,
        domain_backoff_base=1.0,
        domain_backoff_max=8.0,
        billing_grace_days=7,
        cancellation_grace_days=30,
        notification_webhook_url=None,
    )


@pytest_asyncio.fixture()
async def engine(db_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(db_path)
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


@pytest.fixture()
def dns() -> InMemoryDnsProvider:
    return InMemoryDnsProvider()


@pytest.fixture()
def hosting() -> InMemoryHostingPanel:
    return InMemoryHostingPanel()


@pytest.fixture()
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture()
def scheduler() -> InlineScheduler:
    return InlineScheduler()


@pytest.fixture()
def container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    dns: InMemoryDnsProvider,
    hosting: InMemoryHostingPanel,
    notifier: LoggingNotifier,
    scheduler: InlineScheduler,
) -> ProvisioningContainer:
    return build_container(
        settings,
        session_factory,
        dns=dns,
        hosting=hosting,
        notifier=notifier,
        scheduler=scheduler,
    )


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def template(session_factory: async_sessionmaker[AsyncSession]) -> str:
    """Seed ``TPL-A`` and return its id."""
    async with registry_scope(session_factory) as registry:
        await registry.templates.upsert(
            template_id=TEMPLATE_ID,
            name="Salon starter",
            canonical_identifier=CANONICAL_IDENTIFIER,
            canonical_domain=CANONICAL_DOMAIN,
        )
        await registry.templates.replace_items(TEMPLATE_ID, TEMPLATE_ITEMS)
    return TEMPLATE_ID


@pytest.fixture()
def register_tenant(
    container: ProvisioningContainer,
    template: str,
) -> Callable[..., Awaitable[Tenant]]:
    """Return a coroutine function that registers a ``pending`` tenant."""

    async def _register(tenant_id: str = "T1", subdomain: str = "acme", owner: str = "owner-1") -> Tenant:
        return await container.orchestrator.register_payment_intent(
            PaymentIntent(
                tenant_intent_id=tenant_id,
                owner_account_id=owner,
                template_id=template,
                subdomain=subdomain,
            )
        )

    return _register


@pytest.fixture()
def provision_tenant(
    container: ProvisioningContainer,
    scheduler: InlineScheduler,
    register_tenant: Callable[..., Awaitable[Tenant]],
) -> Callable[..., Awaitable[Tenant]]:
    """Return a coroutine function that registers, pays for and clones a tenant."""

    async def _provision(tenant_id: str = "T1", subdomain: str = "acme") -> Tenant:
        await register_tenant(tenant_id, subdomain)
        await container.orchestrator.handle_payment_confirmed(
            PaymentConfirmed(tenant_intent_id=tenant_id, subscription_id=f"sub-{tenant_id}")
        )
        await scheduler.drain(container.dispatcher)
        async with registry_scope(container.session_factory) as registry:
            return Tenant.model_validate(await registry.tenants.require(tenant_id))

    return _provision
