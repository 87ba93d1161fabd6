from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from trustplane.apps.api.main import create_app
from trustplane.domain.models import AuditLog
from trustplane.persistence.db import SessionLocal
from trustplane.tests.utils.auth import gateway_headers, operator_headers
from trustplane.tests.utils.seed import create_gateway, create_org, insert_policies


def _client() -> AsyncClient:
    app = create_app()
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _policy_body(**overrides) -> dict:
    body = {
        "name": "Allow Engineers Everywhere",
        "priority": 300,
        "effect": "ALLOW",
        "conditions": {"roles": ["ENGINEER"]},
    }
    body.update(overrides)
    return body


ENGINEER_REQUEST = {
    "userId": "alice@acme.com",
    "userRole": "ENGINEER",
    "deviceTrustLevel": "HIGH",
    "country": "US",
    "resource": "https://wiki.acme.com",
}


@pytest.mark.asyncio
async def test_policy_list_preserves_store_order() -> None:
    org_id = await create_org()
    ids = await insert_policies(org_id)
    async with _client() as client:
        response = await client.get(
            f"/v1/orgs/{org_id}/policies",
            headers=operator_headers(org_id=org_id, role="VIEWER"),
        )
    assert response.status_code == 200
    items = response.json()["data"]["items"]
    assert [item["id"] for item in items] == ids
    assert items[0]["conditions"]["deviceTrustLevels"] == ["HIGH", "MEDIUM"]


@pytest.mark.asyncio
async def test_created_policy_visible_to_next_evaluation() -> None:
    org_id = await create_org()
    await insert_policies(org_id)
    _gw, api_key = await create_gateway(org_id)
    admin = operator_headers(org_id=org_id, role="ORG_ADMIN")

    async with _client() as client:
        # Warm the cache first so the create has to invalidate it.
        before = await client.post("/v1/gateway/evaluate", json=ENGINEER_REQUEST, headers=gateway_headers(api_key))
        created = await client.post(f"/v1/orgs/{org_id}/policies", json=_policy_body(), headers=admin)
        after = await client.post("/v1/gateway/evaluate", json=ENGINEER_REQUEST, headers=gateway_headers(api_key))
        operator_eval = await client.post(f"/v1/orgs/{org_id}/evaluate", json=ENGINEER_REQUEST, headers=admin)

    assert before.json()["data"]["decision"] == "DENY"
    assert created.status_code == 201
    policy = created.json()["data"]
    assert policy["org_id"] == org_id
    assert policy["priority"] == 300
    assert after.json()["data"]["decision"] == "ALLOW"
    assert after.json()["data"]["matched_policy_ids"] == [policy["id"]]
    assert operator_eval.json()["data"] == after.json()["data"]

    async with SessionLocal() as session:
        audit = (
            await session.execute(select(AuditLog).where(AuditLog.action == "POLICY_CREATED"))
        ).scalar_one()
    assert audit.resource == policy["id"]
    assert audit.org_id == org_id


@pytest.mark.asyncio
async def test_policy_create_requires_org_admin_in_scope() -> None:
    org_id = await create_org()
    other_org = await create_org()
    async with _client() as client:
        no_token = await client.post(f"/v1/orgs/{org_id}/policies", json=_policy_body())
        viewer = await client.post(
            f"/v1/orgs/{org_id}/policies",
            json=_policy_body(),
            headers=operator_headers(org_id=org_id, role="SEC_ANALYST"),
        )
        foreign_admin = await client.post(
            f"/v1/orgs/{org_id}/policies",
            json=_policy_body(),
            headers=operator_headers(org_id=other_org, role="ORG_ADMIN"),
        )
        super_admin = await client.post(
            f"/v1/orgs/{org_id}/policies",
            json=_policy_body(),
            headers=operator_headers(org_id=other_org, role="SUPER_ADMIN"),
        )
    assert no_token.status_code == 401
    assert viewer.status_code == 403
    assert foreign_admin.status_code == 403
    assert foreign_admin.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert super_admin.status_code == 201


@pytest.mark.asyncio
async def test_policy_create_validation_and_unknown_org() -> None:
    org_id = await create_org()
    super_admin = operator_headers(org_id=org_id, role="SUPER_ADMIN")
    async with _client() as client:
        bad_effect = await client.post(
            f"/v1/orgs/{org_id}/policies",
            json=_policy_body(effect="MAYBE"),
            headers=super_admin,
        )
        bad_window = await client.post(
            f"/v1/orgs/{org_id}/policies",
            json=_policy_body(conditions={"timeWindow": {"start": "25:00", "end": "26:00"}}),
            headers=super_admin,
        )
        unknown_field = await client.post(
            f"/v1/orgs/{org_id}/policies",
            json=_policy_body(conditions={"weekdays": ["MON"]}),
            headers=super_admin,
        )
        missing_org = await client.post("/v1/orgs/no-such-org/policies", json=_policy_body(), headers=super_admin)
    assert bad_effect.status_code == 422
    assert bad_effect.json()["error"]["code"] == "VALIDATION_ERROR"
    assert bad_window.status_code == 422
    assert unknown_field.status_code == 422
    assert missing_org.status_code == 404
    assert missing_org.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_policy_create_idempotency() -> None:
    org_id = await create_org()
    headers = {**operator_headers(org_id=org_id, role="ORG_ADMIN", sub="admin-1"), "Idempotency-Key": "create-1"}
    async with _client() as client:
        first = await client.post(f"/v1/orgs/{org_id}/policies", json=_policy_body(), headers=headers)
        replay = await client.post(f"/v1/orgs/{org_id}/policies", json=_policy_body(), headers=headers)
        conflict = await client.post(f"/v1/orgs/{org_id}/policies", json=_policy_body(priority=1), headers=headers)
        listing = await client.get(f"/v1/orgs/{org_id}/policies", headers=headers)
    assert first.status_code == 201
    assert replay.status_code == 201
    assert replay.headers.get("Idempotency-Replayed") == "true"
    assert replay.json()["data"]["id"] == first.json()["data"]["id"]
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "CONFLICT"
    assert len(listing.json()["data"]["items"]) == 1


@pytest.mark.asyncio
async def test_operator_evaluate_for_unknown_org_is_not_found() -> None:
    headers = operator_headers(org_id="ghost", role="VIEWER")
    async with _client() as client:
        response = await client.post("/v1/orgs/ghost/evaluate", json=ENGINEER_REQUEST, headers=headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_operator_evaluate_for_org_without_policies_denies() -> None:
    org_id = await create_org()
    headers = operator_headers(org_id=org_id, role="VIEWER")
    async with _client() as client:
        response = await client.post(f"/v1/orgs/{org_id}/evaluate", json=ENGINEER_REQUEST, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["decision"] == "DENY"
    assert response.json()["data"]["matched_policy_ids"] == []
