from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.domain.models import PolicyHit, Session
from trustplane.persistence.guards import org_predicate


async def get_session(
    session: AsyncSession,
    *,
    session_id: str,
    org_id: str | None = None,
) -> Session | None:
    # Scope by org when the caller knows it so ids cannot cross tenants.
    stmt = select(Session).where(Session.id == session_id)
    if org_id is not None:
        stmt = stmt.where(org_predicate(Session, org_id))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_sessions(
    session: AsyncSession,
    *,
    org_id: str,
    offset: int = 0,
    limit: int = 50,
) -> list[Session]:
    stmt = (
        select(Session)
        .where(org_predicate(Session, org_id))
        .order_by(Session.started_at.desc(), Session.id.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_policy_hits(session: AsyncSession, *, session_id: str) -> list[PolicyHit]:
    result = await session.execute(
        select(PolicyHit).where(PolicyHit.session_id == session_id).order_by(PolicyHit.hit_at.asc())
    )
    return list(result.scalars().all())
