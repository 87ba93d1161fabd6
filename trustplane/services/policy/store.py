from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.core.errors import NotFoundError, StoreUnavailableError
from trustplane.domain.models import Policy
from trustplane.domain.policies import PolicyCondition, PolicyInput, PolicySnapshot
from trustplane.persistence.db import SessionLocal
from trustplane.persistence.repos import organizations as org_repo
from trustplane.persistence.repos import policies as policy_repo
from trustplane.services.audit import build_audit_entry
from trustplane.services.policy.cache import PolicyCache
from trustplane.services.resilience import read_from_store


logger = logging.getLogger(__name__)


def to_snapshot(policy: Policy) -> PolicySnapshot:
    return PolicySnapshot(
        id=policy.id,
        org_id=policy.org_id,
        name=policy.name,
        priority=policy.priority,
        effect=policy.effect,
        conditions=PolicyCondition.model_validate(policy.conditions_json or {}),
        description=policy.description,
        created_at=policy.created_at,
        updated_at=policy.updated_at,
    )


def conditions_to_json(conditions: PolicyCondition) -> dict[str, Any]:
    # Persist camelCase keys so stored rows match the gateway wire format.
    return conditions.model_dump(by_alias=True, exclude_none=True)


async def load_policy_snapshots(org_id: str) -> list[PolicySnapshot]:
    # Cache loader: read the org policy set in store order using a fresh session.
    async def _read() -> list[PolicySnapshot]:
        async with SessionLocal() as session:
            rows = await policy_repo.list_policies(session, org_id=org_id)
            return [to_snapshot(row) for row in rows]

    return await read_from_store(_read, operation="list_policies")


class PolicyStore:
    def __init__(self, cache: PolicyCache) -> None:
        self._cache = cache

    async def _require_org(self, session: AsyncSession, org_id: str) -> None:
        org = await read_from_store(
            lambda: org_repo.get_organization(session, org_id),
            operation="get_organization",
        )
        if org is None:
            raise NotFoundError(f"Organization {org_id} not found")

    async def list_policies(self, session: AsyncSession, *, org_id: str) -> list[Policy]:
        await self._require_org(session, org_id)
        return await read_from_store(
            lambda: policy_repo.list_policies(session, org_id=org_id),
            operation="list_policies",
        )

    async def create_policy(
        self,
        session: AsyncSession,
        *,
        org_id: str,
        payload: PolicyInput,
        actor_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        policy_id: str | None = None,
    ) -> Policy:
        """Insert a policy and invalidate the org cache entry before returning.

        The policy row and its ``POLICY_CREATED`` audit entry commit together.
        Writes are not retried; a failed commit surfaces as STORE_UNAVAILABLE.
        """
        await self._require_org(session, org_id)
        policy = Policy(
            id=policy_id or str(uuid4()),
            org_id=org_id,
            name=payload.name,
            priority=payload.priority,
            conditions_json=conditions_to_json(payload.conditions),
            effect=payload.effect,
            description=payload.description,
            created_by=actor_id,
        )
        session.add(policy)
        session.add(
            build_audit_entry(
                org_id=org_id,
                user_id=actor_id,
                action="POLICY_CREATED",
                resource=policy.id,
                status="SUCCESS",
                details={
                    "policyId": policy.id,
                    "name": payload.name,
                    "priority": payload.priority,
                    "effect": payload.effect,
                },
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("policy_create_failed org_id=%s", org_id, exc_info=exc)
            raise StoreUnavailableError("Policy store unavailable") from exc
        # The next evaluation for this org must observe the new policy.
        await self._cache.invalidate(org_id)
        logger.info("policy_created org_id=%s policy_id=%s priority=%s", org_id, policy.id, policy.priority)
        return policy
