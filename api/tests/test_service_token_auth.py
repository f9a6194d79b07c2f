"""Tests for service-token authentication."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from provisioning_engine.container import ProvisioningContainer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.dependencies import get_container, get_db_session
from api.main import create_app

TOKEN = "s3cret-service-token"


@pytest_asyncio.fixture()
async def secured_client(
    monkeypatch: pytest.MonkeyPatch,
    container: ProvisioningContainer,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    monkeypatch.setenv("API_SERVICE_TOKEN", TOKEN)
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_container] = lambda: container

    async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as ac:
        yield ac


class TestServiceToken:
    @pytest.mark.asyncio
    async def test_missing_header_rejected(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/api/v1/tenants/T1")

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme_rejected(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/api/v1/tenants/T1", headers={"Authorization": f"Basic {TOKEN}"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Authorization header must use Bearer scheme"

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/api/v1/tenants/T1", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    @pytest.mark.asyncio
    async def test_valid_token_reaches_router(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/api/v1/tenants/T1", headers={"Authorization": f"Bearer {TOKEN}"})

        # Authenticated; the tenant simply does not exist.
        assert response.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/v1/health", "/ready", "/metrics"])
    async def test_probes_are_public(self, secured_client: AsyncClient, path: str) -> None:
        response = await secured_client.get(path)

        assert response.status_code == 200


class TestAuthDisabled:
    @pytest.mark.asyncio
    async def test_no_token_configured_allows_requests(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/tenants/T1")

        assert response.status_code == 404
