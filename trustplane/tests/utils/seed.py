from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from trustplane.domain.models import Organization, Policy
from trustplane.persistence.db import SessionLocal
from trustplane.services.auth.gateway_keys import GatewayIdentityResolver


# Demo policy set in insertion order; priorities deliberately out of order.
DEMO_POLICIES: tuple[dict[str, Any], ...] = (
    {
        "name": "Allow Engineers SSH from US",
        "priority": 100,
        "effect": "ALLOW",
        "conditions": {
            "roles": ["ENGINEER"],
            "countries": ["US"],
            "resources": ["ssh://*", "ssh://internal.acme.com/*"],
            "deviceTrustLevels": ["HIGH", "MEDIUM"],
        },
    },
    {
        "name": "Deny Untrusted Devices",
        "priority": 200,
        "effect": "DENY",
        "conditions": {"deviceTrustLevels": ["UNTRUSTED"]},
    },
    {
        "name": "Allow Admins All Resources",
        "priority": 50,
        "effect": "ALLOW",
        "conditions": {"roles": ["ORG_ADMIN", "SUPER_ADMIN"]},
    },
    {
        "name": "Block High-Risk Countries",
        "priority": 150,
        "effect": "DENY",
        "conditions": {"countries": ["CN", "RU", "KP"]},
    },
)


async def create_org(org_id: str | None = None, *, name: str = "Test Org") -> str:
    resolved = org_id or f"org-{uuid4().hex[:10]}"
    async with SessionLocal() as session:
        session.add(Organization(id=resolved, name=name, slug=resolved))
        await session.commit()
    return resolved


async def insert_policies(org_id: str, policies: tuple[dict[str, Any], ...] = DEMO_POLICIES) -> list[str]:
    # One shared timestamp: insertion order must come from the sequence, not the clock.
    stamp = datetime.now(timezone.utc)
    ids: list[str] = []
    async with SessionLocal() as session:
        for definition in policies:
            policy_id = uuid4().hex
            session.add(
                Policy(
                    id=policy_id,
                    org_id=org_id,
                    name=definition["name"],
                    priority=definition["priority"],
                    effect=definition["effect"],
                    conditions_json=definition.get("conditions", {}),
                    description=definition.get("description"),
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            await session.flush()
            ids.append(policy_id)
        await session.commit()
    return ids


async def create_gateway(org_id: str, gateway_id: str | None = None) -> tuple[str, str]:
    resolved = gateway_id or f"gw-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        _gateway, raw_key = await GatewayIdentityResolver().register_gateway(
            session,
            org_id=org_id,
            gateway_id=resolved,
            name=f"Gateway {resolved}",
        )
    return resolved, raw_key
