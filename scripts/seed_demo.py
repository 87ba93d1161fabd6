from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from trustplane.core.errors import ConflictError
from trustplane.domain.policies import PolicyCondition, PolicyInput
from trustplane.persistence.db import SessionLocal
from trustplane.persistence.repos import gateways as gateway_repo
from trustplane.persistence.repos import organizations as org_repo
from trustplane.persistence.repos import policies as policy_repo
from trustplane.services.auth.gateway_keys import GatewayIdentityResolver
from trustplane.services.organizations import create_organization
from trustplane.services.policy.cache import PolicyCache
from trustplane.services.policy.store import PolicyStore, load_policy_snapshots
from trustplane.services.resilience import close_cache_redis, get_cache_redis


DEMO_ORG_ID = "acme"
DEMO_ORG_NAME = "Acme Corp"
DEMO_GATEWAY_ID = "acme-sfo-1"
DEMO_GATEWAY_NAME = "Acme San Francisco Gateway"
# Fixed so the edge simulator works without provisioning a key first.
DEMO_GATEWAY_KEY = "acme-gw-key-123"


@dataclass(frozen=True)
class DemoPolicy:
    name: str
    priority: int
    effect: str
    description: str
    conditions: PolicyCondition


def build_demo_policies() -> tuple[DemoPolicy, ...]:
    # Inserted in this order so equal-priority ties stay deterministic.
    return (
        DemoPolicy(
            name="Allow Engineers SSH from US",
            priority=100,
            effect="ALLOW",
            description="Allow engineers to access SSH resources from US with trusted devices",
            conditions=PolicyCondition(
                roles=["ENGINEER"],
                countries=["US"],
                resources=["ssh://*", "ssh://internal.acme.com/*"],
                device_trust_levels=["HIGH", "MEDIUM"],
            ),
        ),
        DemoPolicy(
            name="Deny Untrusted Devices",
            priority=200,
            effect="DENY",
            description="Block all access from untrusted devices",
            conditions=PolicyCondition(device_trust_levels=["UNTRUSTED"]),
        ),
        DemoPolicy(
            name="Allow Admins All Resources",
            priority=50,
            effect="ALLOW",
            description="Allow admins to access all resources",
            conditions=PolicyCondition(roles=["ORG_ADMIN", "SUPER_ADMIN"]),
        ),
        DemoPolicy(
            name="Block High-Risk Countries",
            priority=150,
            effect="DENY",
            description="Block access from high-risk countries",
            conditions=PolicyCondition(countries=["CN", "RU", "KP"]),
        ),
    )


async def seed_demo() -> int:
    # Share the API's cache wiring so seeding invalidates any stale Redis entry.
    store = PolicyStore(PolicyCache(load_policy_snapshots, redis_factory=get_cache_redis))
    resolver = GatewayIdentityResolver()
    async with SessionLocal() as session:
        if await org_repo.get_organization(session, DEMO_ORG_ID) is None:
            await create_organization(
                session,
                org_id=DEMO_ORG_ID,
                name=DEMO_ORG_NAME,
                slug=DEMO_ORG_ID,
                actor_id="seed_demo",
            )
            print(f"Created organization {DEMO_ORG_ID}.")

        if await policy_repo.list_policies(session, org_id=DEMO_ORG_ID):
            print("Demo policies already seeded; skipping.")
        else:
            for policy in build_demo_policies():
                await store.create_policy(
                    session,
                    org_id=DEMO_ORG_ID,
                    payload=PolicyInput(
                        name=policy.name,
                        priority=policy.priority,
                        effect=policy.effect,
                        description=policy.description,
                        conditions=policy.conditions,
                    ),
                    actor_id="seed_demo",
                )
            print(f"Seeded {len(build_demo_policies())} demo policies.")

        existing = await gateway_repo.get_gateway(session, org_id=DEMO_ORG_ID, gateway_id=DEMO_GATEWAY_ID)
        if existing is None:
            try:
                await resolver.register_gateway(
                    session,
                    org_id=DEMO_ORG_ID,
                    gateway_id=DEMO_GATEWAY_ID,
                    name=DEMO_GATEWAY_NAME,
                    raw_key=DEMO_GATEWAY_KEY,
                )
            except ConflictError:
                print("Demo gateway key already registered elsewhere; skipping.")
            else:
                print(f"Registered gateway {DEMO_GATEWAY_ID}.")
    await close_cache_redis()
    return 0


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
