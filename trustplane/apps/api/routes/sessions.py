from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.apps.api.deps import (
    OperatorPrincipal,
    ensure_org_scope,
    get_db,
    get_recorder,
    idempotency_key_header,
    require_org_access,
    require_role,
)
from trustplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from trustplane.apps.api.response import SuccessEnvelope, success_response
from trustplane.core.errors import ValidationFailedError
from trustplane.domain.models import PolicyHit, Session
from trustplane.domain.policies import DecisionTelemetry
from trustplane.services.audit import get_request_context
from trustplane.services.auth.gateway_keys import GatewayIdentity
from trustplane.services.idempotency import begin_idempotent_write, complete_idempotent_write
from trustplane.services.recorder import DecisionRecorder, RecordedDecision

router = APIRouter(tags=["sessions"], responses=DEFAULT_ERROR_RESPONSES)


class RecordedDecisionResponse(BaseModel):
    session_id: str
    policy_hit_id: str


class SessionResponse(BaseModel):
    id: str
    org_id: str
    user_id: str
    gateway_id: str | None
    status: str
    started_at: datetime | None
    ended_at: datetime | None


class PolicyHitResponse(BaseModel):
    id: str
    session_id: str
    policy_id: str
    decision: str
    resource: str | None
    country: str | None
    device_trust_level: str | None
    hit_at: datetime | None


class SessionListResponse(BaseModel):
    items: list[SessionResponse]
    limit: int
    offset: int


class SessionDetailResponse(BaseModel):
    session: SessionResponse
    hits: list[PolicyHitResponse]


def session_payload(row: Session) -> SessionResponse:
    return SessionResponse(
        id=row.id,
        org_id=row.org_id,
        user_id=row.user_id,
        gateway_id=row.gateway_id,
        status=row.status,
        started_at=row.started_at,
        ended_at=row.ended_at,
    )


def _hit_payload(row: PolicyHit) -> PolicyHitResponse:
    return PolicyHitResponse(
        id=row.id,
        session_id=row.session_id,
        policy_id=row.policy_id,
        decision=row.decision,
        resource=row.resource,
        country=row.country,
        device_trust_level=row.device_trust_level,
        hit_at=row.hit_at,
    )


async def record_with_idempotency(
    *,
    request: Request,
    db: AsyncSession,
    recorder: DecisionRecorder,
    payload: DecisionTelemetry,
    org_id: str,
    gateway_id: str | None,
    caller: GatewayIdentity | OperatorPrincipal,
):
    # Shared by the gateway telemetry route and the operator record-decision route.
    write, replay = await begin_idempotent_write(
        request=request, db=db, org_id=org_id, caller=caller, payload=payload
    )
    if replay is not None:
        return replay

    request_ctx = get_request_context(request)
    recorded: RecordedDecision = await recorder.record(
        db,
        org_id=org_id,
        user_id=payload.user_id,
        gateway_id=gateway_id,
        policy_id=payload.policy_id,
        decision=payload.decision,
        resource=payload.resource,
        country=payload.country,
        device_trust_level=payload.device_trust_level,
        session_id=payload.session_id,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )
    response_payload = RecordedDecisionResponse(
        session_id=recorded.session_id,
        policy_hit_id=recorded.policy_hit_id,
    )
    payload_body = success_response(request=request, data=response_payload)
    await complete_idempotent_write(
        db, write, status_code=status.HTTP_201_CREATED, body=jsonable_encoder(payload_body)
    )
    return payload_body


@router.post(
    "/sessions/record-decision",
    response_model=SuccessEnvelope[RecordedDecisionResponse] | RecordedDecisionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_decision(
    request: Request,
    payload: DecisionTelemetry,
    _idempotency_key: str | None = Depends(idempotency_key_header),
    principal: OperatorPrincipal = Depends(require_role("ORG_ADMIN")),
    db: AsyncSession = Depends(get_db),
    recorder: DecisionRecorder = Depends(get_recorder),
):
    if not payload.org_id:
        raise ValidationFailedError("org_id is required")
    ensure_org_scope(principal, payload.org_id)
    return await record_with_idempotency(
        request=request,
        db=db,
        recorder=recorder,
        payload=payload,
        org_id=payload.org_id,
        gateway_id=payload.gateway_id,
        caller=principal,
    )


@router.post("/sessions/{session_id}/end", response_model=SuccessEnvelope[SessionResponse] | SessionResponse)
async def end_session(
    request: Request,
    session_id: str,
    principal: OperatorPrincipal = Depends(require_role("SEC_ANALYST")),
    db: AsyncSession = Depends(get_db),
    recorder: DecisionRecorder = Depends(get_recorder),
) -> dict:
    request_ctx = get_request_context(request)
    ended = await recorder.end_session(
        db,
        session_id=session_id,
        org_id=principal.org_scope(),
        actor_id=principal.subject_id,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )
    return success_response(request=request, data=session_payload(ended))


@router.get("/orgs/{org_id}/sessions", response_model=SuccessEnvelope[SessionListResponse] | SessionListResponse)
async def list_sessions(
    request: Request,
    org_id: str,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    _principal: OperatorPrincipal = Depends(require_org_access("VIEWER")),
    db: AsyncSession = Depends(get_db),
    recorder: DecisionRecorder = Depends(get_recorder),
) -> dict:
    rows = await recorder.list_sessions(db, org_id=org_id, limit=limit, offset=offset)
    payload = SessionListResponse(
        items=[session_payload(row) for row in rows],
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data=payload)


@router.get(
    "/orgs/{org_id}/sessions/{session_id}",
    response_model=SuccessEnvelope[SessionDetailResponse] | SessionDetailResponse,
)
async def get_session_detail(
    request: Request,
    org_id: str,
    session_id: str,
    _principal: OperatorPrincipal = Depends(require_org_access("VIEWER")),
    db: AsyncSession = Depends(get_db),
    recorder: DecisionRecorder = Depends(get_recorder),
) -> dict:
    detail = await recorder.get_session_detail(db, org_id=org_id, session_id=session_id)
    payload = SessionDetailResponse(
        session=session_payload(detail.session),
        hits=[_hit_payload(hit) for hit in detail.hits],
    )
    return success_response(request=request, data=payload)
