from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.core.config import get_settings
from trustplane.domain.models import IdempotencyRecord
from trustplane.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)


async def prune_audit_logs(session: AsyncSession, *, retention_days: int | None = None) -> int:
    # The audit log is append-only; retention pruning is its single exception. Callers own the commit.
    days = retention_days if retention_days is not None else get_settings().audit_retention_days
    if days <= 0:
        return 0
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    deleted = await audit_repo.delete_logs_before(session, cutoff=cutoff)
    logger.info("audit_logs_pruned deleted=%s retention_days=%s", deleted, days)
    return deleted


async def prune_idempotency_records(session: AsyncSession) -> int:
    # Expired replay records are never served, so they can be dropped.
    result = await session.execute(
        delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= datetime.now(timezone.utc))
    )
    deleted = int(result.rowcount or 0)
    logger.info("idempotency_records_pruned deleted=%s", deleted)
    return deleted
