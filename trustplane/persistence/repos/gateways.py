from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.domain.models import Gateway
from trustplane.persistence.guards import org_predicate


async def get_gateway_by_key_hash(session: AsyncSession, key_hash: str) -> Gateway | None:
    # Key hashes are globally unique, so this lookup is the one unscoped query.
    result = await session.execute(select(Gateway).where(Gateway.key_hash == key_hash))
    return result.scalar_one_or_none()


async def get_gateway(session: AsyncSession, *, org_id: str, gateway_id: str) -> Gateway | None:
    result = await session.execute(
        select(Gateway).where(org_predicate(Gateway, org_id), Gateway.id == gateway_id)
    )
    return result.scalar_one_or_none()


async def list_gateways(session: AsyncSession, *, org_id: str) -> list[Gateway]:
    result = await session.execute(
        select(Gateway).where(org_predicate(Gateway, org_id)).order_by(Gateway.created_at.asc())
    )
    return list(result.scalars().all())
