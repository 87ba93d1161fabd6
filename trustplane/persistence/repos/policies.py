from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.domain.models import Policy
from trustplane.persistence.guards import org_predicate, require_org_id


async def list_policies(session: AsyncSession, *, org_id: str) -> list[Policy]:
    # Return insertion order; the engine applies priority ordering itself.
    require_org_id(org_id)
    result = await session.execute(
        select(Policy)
        .where(org_predicate(Policy, org_id))
        .order_by(Policy.seq.asc())
    )
    return list(result.scalars().all())
