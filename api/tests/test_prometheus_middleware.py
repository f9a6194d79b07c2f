"""Tests for the HTTP metrics middleware and the /metrics endpoint."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from api.middleware.prometheus import _normalise_path


class TestNormalisePath:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/v1/tenants/T1", "/api/v1/tenants/{id}"),
            ("/api/v1/tenants/acme-co/history", "/api/v1/tenants/{id}/history"),
            ("/api/v1/tenants/T1/content/blogname", "/api/v1/tenants/{id}/content/blogname"),
            ("/api/v1/tenants/T1/domains", "/api/v1/tenants/{id}/domains"),
            ("/api/v1/domains/0b9f2c/advance", "/api/v1/domains/{id}/advance"),
            ("/api/v1/events/payment-confirmed", "/api/v1/events/payment-confirmed"),
            ("/api/v1/tenants", "/api/v1/tenants"),
            ("/ready", "/ready"),
        ],
    )
    def test_identifiers_collapsed(self, path: str, expected: str) -> None:
        assert _normalise_path(path) == expected


class TestMetricsEndpoint:
    @pytest.mark.asyncio
    async def test_exposes_request_counters(self, client: AsyncClient) -> None:
        await client.get("/api/v1/tenants/UNKNOWN")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "provisioning_http_requests_total" in response.text
        assert 'path="/api/v1/tenants/{id}"' in response.text

    @pytest.mark.asyncio
    async def test_metrics_scrape_not_recorded(self, client: AsyncClient) -> None:
        await client.get("/metrics")
        response = await client.get("/metrics")

        assert 'path="/metrics"' not in response.text
