from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.domain.models import AuditLog
from trustplane.persistence.guards import org_predicate


async def list_logs(
    session: AsyncSession,
    *,
    org_id: str,
    action: str | None = None,
    user_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLog]:
    # Scope all audit queries to an org to prevent cross-tenant leakage.
    stmt = select(AuditLog).where(org_predicate(AuditLog, org_id))
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def delete_logs_before(session: AsyncSession, *, cutoff: datetime) -> int:
    # Only exception to the append-only audit log: rows past retention are deleted here.
    result = await session.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
    return int(result.rowcount or 0)
