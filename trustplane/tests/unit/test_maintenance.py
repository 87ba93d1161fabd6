from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from trustplane.domain.models import AuditLog, IdempotencyRecord
from trustplane.persistence.db import SessionLocal
from trustplane.services.maintenance import prune_audit_logs, prune_idempotency_records
from trustplane.services.recorder import DecisionRecorder


@pytest.mark.asyncio
async def test_prune_audit_logs_respects_retention() -> None:
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        session.add(AuditLog(org_id="org-1", action="ACCESS_REQUEST", created_at=now - timedelta(days=120)))
        session.add(AuditLog(org_id="org-1", action="ACCESS_REQUEST", created_at=now - timedelta(days=1)))
        await session.commit()

    async with SessionLocal() as session:
        deleted = await prune_audit_logs(session, retention_days=90)
        await session.commit()
    assert deleted == 1

    async with SessionLocal() as session:
        remaining = (await session.execute(select(AuditLog))).scalars().all()
    assert len(remaining) == 1


@pytest.mark.asyncio
async def test_prune_audit_logs_disabled_with_zero_retention() -> None:
    async with SessionLocal() as session:
        assert await prune_audit_logs(session, retention_days=0) == 0


@pytest.mark.asyncio
async def test_prune_idempotency_records_drops_expired_only() -> None:
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        for key, expires_at in (("old", now - timedelta(hours=1)), ("fresh", now + timedelta(hours=1))):
            session.add(
                IdempotencyRecord(
                    org_id="org-1",
                    actor_id="admin",
                    method="POST",
                    path="/v1/orgs/org-1/policies",
                    idem_key=key,
                    request_hash="h",
                    response_status=201,
                    response_body_json={},
                    expires_at=expires_at,
                )
            )
        await session.commit()

    async with SessionLocal() as session:
        deleted = await prune_idempotency_records(session)
        await session.commit()
    assert deleted == 1


@pytest.mark.asyncio
async def test_session_lifecycle_only_appends_audit_rows() -> None:
    recorder = DecisionRecorder()
    async with SessionLocal() as session:
        recorded = await recorder.record(session, org_id="org-1", user_id="u-1", policy_id="p-1", decision="ALLOW")
        await recorder.record(
            session,
            org_id="org-1",
            user_id="u-1",
            policy_id="p-2",
            decision="DENY",
            session_id=recorded.session_id,
        )
        await recorder.end_session(session, session_id=recorded.session_id, org_id="org-1")
        # Pruning within the window leaves every fresh row in place.
        assert await prune_audit_logs(session, retention_days=90) == 0
        await session.commit()

    async with SessionLocal() as session:
        actions = (await session.execute(select(AuditLog.action).order_by(AuditLog.id))).scalars().all()
    assert actions == ["ACCESS_REQUEST", "ACCESS_REQUEST", "SESSION_ENDED"]
