from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from trustplane.apps.api.main import create_app
from trustplane.tests.utils.auth import gateway_headers, operator_headers


def _client() -> AsyncClient:
    app = create_app()
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _root() -> dict[str, str]:
    return operator_headers(org_id="platform", role="SUPER_ADMIN", sub="root")


@pytest.mark.asyncio
async def test_health_is_public() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}
    assert response.headers.get("X-Request-Id")


@pytest.mark.asyncio
async def test_request_id_is_propagated() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.headers["X-Request-Id"] == "req-123"
    assert response.json()["meta"]["request_id"] == "req-123"


@pytest.mark.asyncio
async def test_org_lifecycle() -> None:
    async with _client() as client:
        created = await client.post("/v1/orgs", json={"name": "Acme", "slug": "acme", "id": "acme"}, headers=_root())
        duplicate = await client.post("/v1/orgs", json={"name": "Acme 2", "slug": "acme"}, headers=_root())
        admin = operator_headers(org_id="acme", role="ORG_ADMIN")
        fetched = await client.get("/v1/orgs/acme", headers=operator_headers(org_id="acme", role="VIEWER"))
        renamed = await client.patch("/v1/orgs/acme", json={"name": "Acme Corp"}, headers=admin)
        slug_change = await client.patch("/v1/orgs/acme", json={"name": "x", "slug": "new"}, headers=admin)
        listing = await client.get("/v1/orgs", headers=_root())
        admin_listing = await client.get("/v1/orgs", headers=admin)
        missing = await client.get("/v1/orgs/nope", headers=_root())

    assert created.status_code == 201
    assert created.json()["data"]["slug"] == "acme"
    assert duplicate.status_code == 409
    assert fetched.json()["data"]["name"] == "Acme"
    assert renamed.json()["data"]["name"] == "Acme Corp"
    assert slug_change.status_code == 422
    assert [item["id"] for item in listing.json()["data"]["items"]] == ["acme"]
    assert admin_listing.status_code == 403
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_org_create_requires_super_admin() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/orgs",
            json={"name": "Acme", "slug": "acme"},
            headers=operator_headers(org_id="acme", role="ORG_ADMIN"),
        )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_gateway_registration_issues_working_key() -> None:
    async with _client() as client:
        await client.post("/v1/orgs", json={"name": "Acme", "slug": "acme", "id": "acme"}, headers=_root())
        admin = operator_headers(org_id="acme", role="ORG_ADMIN")
        registered = await client.post(
            "/v1/orgs/acme/gateways",
            json={"id": "acme-sfo-1", "name": "San Francisco"},
            headers=admin,
        )
        duplicate = await client.post(
            "/v1/orgs/acme/gateways",
            json={"id": "acme-sfo-1", "name": "Again"},
            headers=admin,
        )
        api_key = registered.json()["data"]["api_key"]
        listing = await client.get(
            "/v1/orgs/acme/gateways",
            headers=operator_headers(org_id="acme", role="SEC_ANALYST"),
        )
        evaluated = await client.post(
            "/v1/gateway/evaluate",
            json={
                "userId": "u",
                "userRole": "VIEWER",
                "deviceTrustLevel": "LOW",
                "country": "US",
                "resource": "https://wiki",
            },
            headers=gateway_headers(api_key),
        )
        audit = await client.get(
            "/v1/orgs/acme/audit-logs?action=GATEWAY_REGISTERED",
            headers=operator_headers(org_id="acme", role="SEC_ANALYST"),
        )

    assert registered.status_code == 201
    assert api_key.startswith("tpgw_acme-sfo-1_")
    assert duplicate.status_code == 409
    items = listing.json()["data"]["items"]
    assert [item["id"] for item in items] == ["acme-sfo-1"]
    assert "api_key" not in items[0]
    assert items[0]["key_prefix"] == api_key[:12]
    assert evaluated.status_code == 200
    assert evaluated.json()["data"]["decision"] == "DENY"
    audit_items = audit.json()["data"]["items"]
    assert len(audit_items) == 1
    assert api_key not in str(audit_items[0])


@pytest.mark.asyncio
async def test_ops_metrics_requires_super_admin() -> None:
    async with _client() as client:
        await client.get("/v1/health")
        denied = await client.get("/v1/ops/metrics", headers=operator_headers(org_id="acme", role="ORG_ADMIN"))
        allowed = await client.get("/v1/ops/metrics", headers=_root())
    assert denied.status_code == 403
    assert allowed.status_code == 200
    body = allowed.json()["data"]
    assert "counters" in body
    assert body["availability_5m"] == 100.0
