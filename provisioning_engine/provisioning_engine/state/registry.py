"""Tenant registry facade.

Bundles the repositories over a single ``AsyncSession`` so that a component
can perform several writes (create a job, claim the in-flight marker, move
the tenant) inside one transaction.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession

from provisioning_engine.state.repository import (
    CloneJobRepository,
    ContentRepository,
    DomainBindingRepository,
    HistoryRepository,
    SubscriptionRepository,
    TemplateRepository,
    TenantRepository,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class Registry:
    """All repositories bound to one session (and therefore one transaction)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.history = HistoryRepository(session)
        self.tenants = TenantRepository(session, self.history)
        self.clone_jobs = CloneJobRepository(session, self.history)
        self.domains = DomainBindingRepository(session, self.history)
        self.subscriptions = SubscriptionRepository(session, self.history)
        self.templates = TemplateRepository(session)
        self.content = ContentRepository(session, self.tenants)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


@asynccontextmanager
async def registry_scope(session_factory: SessionFactory) -> AsyncGenerator[Registry, None]:
    """Yield a :class:`Registry` with automatic commit/rollback semantics.

    On successful exit the transaction is committed.  If an exception
    propagates the transaction is rolled back before the error is re-raised,
    so a failed multi-step write leaves no partial state behind.
    """
    session = session_factory()
    try:
        yield Registry(session)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
