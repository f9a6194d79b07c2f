"""FastAPI application entry-point for the tenant provisioning control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from provisioning_engine.errors import (
    BindingNotFound,
    CloneAttemptsExhausted,
    ContentLocked,
    DomainConflict,
    InvalidDomain,
    InvalidTransition,
    MalformedEncoding,
    ProviderPermanent,
    ProviderTransient,
    ProvisioningError,
    StateConflict,
    TemplateNotFound,
    TenantNotFound,
)
from sqlalchemy.exc import SQLAlchemyError

from api.config import API_VERSION, load_api_settings
from api.dependencies import (
    dispose_container,
    dispose_engine,
    get_engine_settings,
    init_container,
    init_engine,
)
from api.middleware.auth import ServiceTokenMiddleware
from api.middleware.json_formatter import install_json_logging
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.routers import domains, events, health, tenants
from api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)

# Checked in order; subclasses must precede their bases.
_STATUS_BY_ERROR: tuple[tuple[type[ProvisioningError], int], ...] = (
    (TenantNotFound, 404),
    (TemplateNotFound, 404),
    (BindingNotFound, 404),
    (DomainConflict, 409),
    (StateConflict, 409),
    (InvalidTransition, 409),
    (CloneAttemptsExhausted, 409),
    (ContentLocked, 423),
    (InvalidDomain, 422),
    (MalformedEncoding, 422),
    (ProviderPermanent, 422),
    (ProviderTransient, 503),
)


def status_for_error(exc: ProvisioningError) -> int:
    """Return the HTTP status code for a provisioning error."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables if they do not exist (local SQLite and dev; production
      should use Alembic migrations).
    - Build the provisioning components and start the sweep loop.

    On shutdown:
    - Stop the sweep loop and cancel in-flight jobs.
    - Dispose the database engine connection pool.
    """
    api_settings = load_api_settings()
    settings = get_engine_settings()

    if api_settings.structured_logging or settings.structured_logging:
        install_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if settings.is_local() else "postgres",
    )

    if api_settings.create_tables:
        from provisioning_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    container = init_container(settings)
    if api_settings.run_sweeper:
        await container.sweeper.start()
        logger.info("Sweep loop started (interval=%ss)", settings.sweep_interval_seconds)

    yield

    await dispose_container()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Provisioning API",
        description="Control plane for tenant provisioning, custom domains and subscription enforcement.",
        version=API_VERSION,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    token = settings.service_token.get_secret_value() if settings.service_token else None
    app.add_middleware(ServiceTokenMiddleware, token=token)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(tenants.router, prefix="/api/v1")
    app.include_router(domains.router, prefix="/api/v1")
    app.include_router(events.router, prefix="/api/v1")

    # Metrics endpoint, outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # Probes live at the root, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ProvisioningError)
    async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.user_message, "error": type(exc).__name__},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
