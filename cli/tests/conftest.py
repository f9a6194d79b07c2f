"""Shared fixtures for CLI tests.

Commands run through ``typer.testing.CliRunner`` against a SQLite file under
``tmp_path`` passed with ``--database-url``.  Seeding happens in its own
``asyncio.run`` with its own engine, so nothing is shared with the command
under test except the database file.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from provisioning_engine.config import Settings
from provisioning_engine.container import build_container
from provisioning_engine.models import PaymentConfirmed, PaymentIntent
from provisioning_engine.providers.local import InlineScheduler
from provisioning_engine.state.registry import registry_scope
from provisioning_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import async_sessionmaker

TEMPLATE_DOCUMENT = {
    "template_id": "TPL-A",
    "name": "Salon starter",
    "canonical_identifier": "tplasite",
    "canonical_domain": "tplasite.sites.example.com",
    "items": {
        "siteurl": "https://tplasite.sites.example.com",
        "blogname": "tplasite",
        "widget_text": 'a:1:{s:5:"title";s:11:"Hi tplasite";}',
    },
}


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


@pytest.fixture()
def db_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture()
def template_file(tmp_path: Path) -> Path:
    path = tmp_path / "template.json"
    path.write_text(json.dumps(TEMPLATE_DOCUMENT), encoding="utf-8")
    return path


async def _seed(db_path: Path, tenant_id: str, subdomain: str, *, paid: bool) -> None:
    engine = get_local_engine(db_path)
    try:
        await create_local_tables(engine)
        factory = async_sessionmaker(engine, expire_on_commit=False)
        scheduler = InlineScheduler()
        container = build_container(
            Settings(database_url=f"sqlite+aiosqlite:///{db_path}", _env_file=None),  # type: ignore[call-arg]
            factory,
            scheduler=scheduler,
        )
        async with registry_scope(factory) as registry:
            await registry.templates.upsert(
                template_id=TEMPLATE_DOCUMENT["template_id"],
                name=TEMPLATE_DOCUMENT["name"],
                canonical_identifier=TEMPLATE_DOCUMENT["canonical_identifier"],
                canonical_domain=TEMPLATE_DOCUMENT["canonical_domain"],
            )
            await registry.templates.replace_items("TPL-A", TEMPLATE_DOCUMENT["items"].items())
        await container.orchestrator.register_payment_intent(
            PaymentIntent(tenant_intent_id=tenant_id, owner_account_id="owner-1", template_id="TPL-A", subdomain=subdomain)
        )
        if paid:
            await container.orchestrator.handle_payment_confirmed(
                PaymentConfirmed(tenant_intent_id=tenant_id, subscription_id=f"sub-{tenant_id}")
            )
            await scheduler.drain(container.dispatcher)
        await container.close()
    finally:
        await engine.dispose()


@pytest.fixture()
def seed_tenant(db_path: Path):  # noqa: ANN201
    """Return a function that creates a tenant (cloned when *paid*) in the test database."""

    def _run(tenant_id: str = "T1", subdomain: str = "acme", *, paid: bool = True) -> str:
        asyncio.run(_seed(db_path, tenant_id, subdomain, paid=paid))
        return tenant_id

    return _run
