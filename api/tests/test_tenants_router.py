"""Tests for the tenant endpoints."""

from __future__ import annotations

from typing import Any

import pytest
from httpx import AsyncClient
from provisioning_engine.container import ProvisioningContainer
from provisioning_engine.providers.local import InlineScheduler


class TestRegisterTenant:
    @pytest.mark.asyncio
    async def test_creates_pending_tenant(self, client: AsyncClient, intent_body: Any) -> None:
        response = await client.post("/api/v1/tenants", json=intent_body())

        assert response.status_code == 201
        body = response.json()
        assert body["tenant_id"] == "T1"
        assert body["state"] == "pending"
        assert body["template_id"] == "TPL-A"
        assert body["subdomain"] == "acme"

    @pytest.mark.asyncio
    async def test_registration_is_idempotent(self, client: AsyncClient, intent_body: Any) -> None:
        first = await client.post("/api/v1/tenants", json=intent_body())
        second = await client.post("/api/v1/tenants", json=intent_body())

        assert second.status_code == 201
        assert second.json()["created_at"] == first.json()["created_at"]

    @pytest.mark.asyncio
    async def test_conflicting_details_rejected(self, client: AsyncClient, intent_body: Any) -> None:
        await client.post("/api/v1/tenants", json=intent_body())

        response = await client.post("/api/v1/tenants", json=intent_body(subdomain="other"))

        assert response.status_code == 409
        assert response.json()["error"] == "StateConflict"

    @pytest.mark.asyncio
    async def test_taken_subdomain_rejected(self, client: AsyncClient, intent_body: Any) -> None:
        await client.post("/api/v1/tenants", json=intent_body("T1", "acme"))

        response = await client.post("/api/v1/tenants", json=intent_body("T2", "acme"))

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_template_is_404(self, client: AsyncClient, intent_body: Any) -> None:
        response = await client.post("/api/v1/tenants", json=intent_body(template_id="TPL-NOPE"))

        assert response.status_code == 404
        assert response.json()["error"] == "TemplateNotFound"
        assert response.json()["detail"].startswith("clone: ")

    @pytest.mark.asyncio
    async def test_invalid_subdomain_fails_validation(self, client: AsyncClient, intent_body: Any) -> None:
        response = await client.post("/api/v1/tenants", json=intent_body(subdomain="Not A Label"))

        assert response.status_code == 422


class TestTenantDetail:
    @pytest.mark.asyncio
    async def test_detail_after_provisioning(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        response = await client.get("/api/v1/tenants/T1")

        assert response.status_code == 200
        body = response.json()
        assert body["tenant"]["state"] == "active_pending_domain"
        assert body["host"] == "acme.sites.example.com"
        assert body["clone_job"]["status"] == "completed"
        assert body["clone_job"]["items_copied"] == 3
        assert body["domains"] == []
        assert body["subscription"]["billing_status"] == "current"

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/tenants/NOPE")

        assert response.status_code == 404
        assert response.json() == {"detail": "registry: tenant NOPE does not exist", "error": "TenantNotFound"}

    @pytest.mark.asyncio
    async def test_history_lists_transitions(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        response = await client.get("/api/v1/tenants/T1/history", params={"entity_type": "tenant"})

        assert response.status_code == 200
        states = [event["to_state"] for event in response.json()["events"]]
        assert states == ["pending", "cloning", "active_pending_domain"]


class TestTenantContent:
    @pytest.mark.asyncio
    async def test_cloned_content_is_rewritten(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        response = await client.get("/api/v1/tenants/T1/content")

        items = {item["item_key"]: item["payload"] for item in response.json()}
        assert items["siteurl"] == "https://acme.sites.example.com"
        assert items["blogname"] == "acme"
        assert items["widget_text"] == 'a:1:{s:5:"title";s:7:"Hi acme";}'

    @pytest.mark.asyncio
    async def test_owner_can_edit_content(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        response = await client.put("/api/v1/tenants/T1/content/blogname", json={"payload": "Acme Salon"})

        assert response.status_code == 200
        assert response.json()["payload"] == "Acme Salon"

    @pytest.mark.asyncio
    async def test_content_locked_after_deprovision(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()
        await client.post("/api/v1/tenants/T1/deprovision", json={"reason": "closed account"})

        write = await client.put("/api/v1/tenants/T1/content/blogname", json={"payload": "x"})
        read = await client.get("/api/v1/tenants/T1/content")

        assert write.status_code == 423
        assert write.json()["error"] == "ContentLocked"
        assert read.status_code == 200


class TestTenantActions:
    @pytest.mark.asyncio
    async def test_deprovision_is_repeatable(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        first = await client.post("/api/v1/tenants/T1/deprovision")
        second = await client.post("/api/v1/tenants/T1/deprovision")

        assert first.status_code == 200
        assert first.json()["state"] == "deprovisioned"
        assert second.json()["version"] == first.json()["version"]

    @pytest.mark.asyncio
    async def test_billing_grace_and_resume(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        failed = await client.post("/api/v1/tenants/T1/billing", json={"status": "past_due"})
        resumed = await client.post("/api/v1/tenants/T1/billing", json={"status": "current"})

        assert failed.json()["action"] == "billing_grace_started"
        assert failed.json()["tenant_state"] == "grace_billing"
        assert failed.json()["grace_deadline"] is not None
        assert resumed.json()["action"] == "grace_cleared"
        assert resumed.json()["tenant_state"] == "active_pending_domain"

    @pytest.mark.asyncio
    async def test_unknown_billing_status_fails_validation(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        response = await client.post("/api/v1/tenants/T1/billing", json={"status": "bankrupt"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_requeue_requires_escalated_tenant(self, client: AsyncClient, provisioned: Any) -> None:
        await provisioned()

        response = await client.post("/api/v1/tenants/T1/requeue")

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"

    @pytest.mark.asyncio
    async def test_add_domain_schedules_activation(
        self,
        client: AsyncClient,
        provisioned: Any,
        container: ProvisioningContainer,
        scheduler: InlineScheduler,
    ) -> None:
        await provisioned()

        response = await client.post("/api/v1/tenants/T1/domains", json={"domain": "www.acme-salon.com"})
        assert response.status_code == 201
        binding_id = response.json()["binding_id"]

        await scheduler.drain(container.dispatcher)

        binding = await client.get(f"/api/v1/domains/{binding_id}")
        tenant = await client.get("/api/v1/tenants/T1")
        assert binding.json()["state"] == "active"
        assert tenant.json()["tenant"]["state"] == "active"
