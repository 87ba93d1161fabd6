from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.core.config import get_settings
from trustplane.core.errors import NotFoundError, StoreUnavailableError, ValidationFailedError
from trustplane.domain.models import AuditLog, PolicyHit, Session
from trustplane.domain.policies import PolicyEffect
from trustplane.persistence.guards import require_org_id
from trustplane.persistence.repos import audit as audit_repo
from trustplane.persistence.repos import sessions as sessions_repo
from trustplane.services.audit import build_audit_entry
from trustplane.services.resilience import bounded, read_from_store
from trustplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SESSION_ACTIVE = "ACTIVE"
SESSION_ENDED = "ENDED"
ACCESS_REQUEST_ACTION = "ACCESS_REQUEST"
SESSION_ENDED_ACTION = "SESSION_ENDED"


@dataclass(frozen=True)
class RecordedDecision:
    session_id: str
    policy_hit_id: str


@dataclass(frozen=True)
class SessionDetail:
    session: Session
    hits: list[PolicyHit]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_page(limit: int, offset: int) -> tuple[int, int]:
    # Keep pagination within configured bounds.
    max_page_size = get_settings().max_page_size
    if limit < 1 or offset < 0:
        raise ValidationFailedError("limit must be >= 1 and offset must be >= 0")
    return min(limit, max_page_size), offset


class DecisionRecorder:
    """Persist decisions as session + policy hit + audit entry.

    Every write path runs in a single transaction on the caller's session. A
    failure rolls the whole unit back and raises STORE_UNAVAILABLE, so a
    recorded decision never exists without its audit entry.
    """

    def __init__(self, *, timeout_ms: int | None = None) -> None:
        self._timeout_ms = timeout_ms if timeout_ms is not None else get_settings().store_timeout_ms

    async def _commit(self, session: AsyncSession, *, operation: str) -> None:
        try:
            await bounded(session.commit(), timeout_ms=self._timeout_ms)
        except (SQLAlchemyError, TimeoutError) as exc:
            await session.rollback()
            increment_counter("store_unavailable_total")
            logger.error("decision_log_write_failed operation=%s", operation, exc_info=exc)
            raise StoreUnavailableError("Decision log unavailable") from exc

    async def _load_session(
        self,
        session: AsyncSession,
        *,
        session_id: str,
        org_id: str | None,
    ) -> Session:
        row = await read_from_store(
            lambda: sessions_repo.get_session(session, session_id=session_id, org_id=org_id),
            operation="get_session",
        )
        if row is None:
            raise NotFoundError(f"Session {session_id} not found")
        return row

    async def record(
        self,
        session: AsyncSession,
        *,
        org_id: str,
        user_id: str,
        policy_id: str,
        decision: PolicyEffect,
        gateway_id: str | None = None,
        resource: str | None = None,
        country: str | None = None,
        device_trust_level: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RecordedDecision:
        require_org_id(org_id)
        if session_id:
            # Caller-supplied sessions must exist in this org and still be open.
            access_session = await self._load_session(session, session_id=session_id, org_id=org_id)
            if access_session.status == SESSION_ENDED:
                raise ValidationFailedError(f"Session {session_id} has ended")
        else:
            access_session = Session(
                id=str(uuid4()),
                org_id=org_id,
                user_id=user_id,
                gateway_id=gateway_id,
                status=SESSION_ACTIVE,
                started_at=_utc_now(),
            )
            session.add(access_session)

        hit = PolicyHit(
            id=str(uuid4()),
            session_id=access_session.id,
            policy_id=policy_id,
            decision=decision,
            resource=resource,
            country=country,
            device_trust_level=device_trust_level,
            hit_at=_utc_now(),
        )
        session.add(hit)
        session.add(
            build_audit_entry(
                org_id=org_id,
                user_id=user_id,
                action=ACCESS_REQUEST_ACTION,
                resource=resource,
                status=decision,
                details={
                    "policyId": policy_id,
                    "gatewayId": gateway_id,
                    "country": country,
                    "deviceTrustLevel": device_trust_level,
                    "sessionId": access_session.id,
                },
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        await self._commit(session, operation="record_decision")
        increment_counter(f"decisions_recorded_total.{decision.lower()}")
        logger.info(
            "decision_recorded org_id=%s session_id=%s policy_id=%s decision=%s",
            org_id,
            access_session.id,
            policy_id,
            decision,
        )
        return RecordedDecision(session_id=access_session.id, policy_hit_id=hit.id)

    async def end_session(
        self,
        session: AsyncSession,
        *,
        session_id: str,
        org_id: str | None = None,
        actor_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        access_session = await self._load_session(session, session_id=session_id, org_id=org_id)
        if access_session.status == SESSION_ENDED:
            # Ending twice is a no-op; the first ended_at stands.
            return access_session
        access_session.status = SESSION_ENDED
        access_session.ended_at = _utc_now()
        session.add(
            build_audit_entry(
                org_id=access_session.org_id,
                user_id=actor_id or access_session.user_id,
                action=SESSION_ENDED_ACTION,
                resource=access_session.id,
                status=SESSION_ENDED,
                details={"sessionId": access_session.id, "gatewayId": access_session.gateway_id},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        await self._commit(session, operation="end_session")
        logger.info("session_ended org_id=%s session_id=%s", access_session.org_id, access_session.id)
        return access_session

    async def list_sessions(
        self,
        session: AsyncSession,
        *,
        org_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Session]:
        limit, offset = clamp_page(limit, offset)
        return await read_from_store(
            lambda: sessions_repo.list_sessions(session, org_id=org_id, offset=offset, limit=limit),
            operation="list_sessions",
        )

    async def get_session_detail(
        self,
        session: AsyncSession,
        *,
        org_id: str,
        session_id: str,
    ) -> SessionDetail:
        require_org_id(org_id)
        access_session = await self._load_session(session, session_id=session_id, org_id=org_id)
        hits = await read_from_store(
            lambda: sessions_repo.list_policy_hits(session, session_id=session_id),
            operation="list_policy_hits",
        )
        return SessionDetail(session=access_session, hits=hits)

    async def list_audit_logs(
        self,
        session: AsyncSession,
        *,
        org_id: str,
        limit: int = 50,
        offset: int = 0,
        action: str | None = None,
    ) -> list[AuditLog]:
        limit, offset = clamp_page(limit, offset)
        return await read_from_store(
            lambda: audit_repo.list_logs(session, org_id=org_id, action=action, offset=offset, limit=limit),
            operation="list_audit_logs",
        )
