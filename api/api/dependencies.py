"""FastAPI dependency injection for settings, database sessions and components."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from provisioning_engine.config import Settings, load_settings
from provisioning_engine.container import ProvisioningContainer, build_container
from provisioning_engine.providers.local import TaskScheduler
from provisioning_engine.state.database import get_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_engine_settings_cache: Settings | None = None


def get_engine_settings() -> Settings:
    """Return the cached engine :class:`Settings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_settings()
    return _engine_settings_cache


# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: Settings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Provisioning components
# ---------------------------------------------------------------------------

_container: ProvisioningContainer | None = None


def init_container(settings: Settings) -> ProvisioningContainer:
    """Build the component container over the global session factory.

    Jobs run as in-process asyncio tasks; the sweep loop re-discovers any
    work lost on restart.
    """
    global _container  # noqa: PLW0603
    _container = build_container(settings, get_session_factory(), scheduler=TaskScheduler())
    return _container


async def dispose_container() -> None:
    global _container  # noqa: PLW0603
    if _container is not None:
        await _container.close()
        _container = None


def get_container() -> ProvisioningContainer:
    """Return the process-wide :class:`ProvisioningContainer`."""
    if _container is None:
        raise RuntimeError(
            "Provisioning components have not been initialised. Ensure init_container() is called during startup."
        )
    return _container


ContainerDep = Annotated[ProvisioningContainer, Depends(get_container)]
