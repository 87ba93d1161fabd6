from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.apps.api.deps import (
    get_db,
    get_decision_engine,
    get_gateway_identity,
    get_recorder,
    idempotency_key_header,
)
from trustplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from trustplane.apps.api.response import SuccessEnvelope, success_response
from trustplane.apps.api.routes.policies import EvaluationResponse, evaluation_payload
from trustplane.apps.api.routes.sessions import (
    RecordedDecisionResponse,
    SessionResponse,
    record_with_idempotency,
    session_payload,
)
from trustplane.core.errors import ForbiddenError
from trustplane.domain.policies import AccessRequest, DecisionTelemetry
from trustplane.services.auth.gateway_keys import GatewayIdentity
from trustplane.services.audit import get_request_context
from trustplane.services.policy.engine import PolicyDecisionEngine
from trustplane.services.recorder import DecisionRecorder

router = APIRouter(prefix="/gateway", tags=["gateway"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/evaluate", response_model=SuccessEnvelope[EvaluationResponse] | EvaluationResponse)
async def evaluate(
    request: Request,
    payload: AccessRequest,
    identity: GatewayIdentity = Depends(get_gateway_identity),
    engine: PolicyDecisionEngine = Depends(get_decision_engine),
) -> dict:
    # The org comes from the gateway key; gateways never choose their tenant.
    result = await engine.evaluate(identity.org_id, payload)
    return success_response(request=request, data=evaluation_payload(result))


@router.post(
    "/telemetry",
    response_model=SuccessEnvelope[RecordedDecisionResponse] | RecordedDecisionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def telemetry(
    request: Request,
    payload: DecisionTelemetry,
    _idempotency_key: str | None = Depends(idempotency_key_header),
    identity: GatewayIdentity = Depends(get_gateway_identity),
    db: AsyncSession = Depends(get_db),
    recorder: DecisionRecorder = Depends(get_recorder),
):
    # Reject bodies that claim a different tenant or gateway than the key.
    if payload.org_id is not None and payload.org_id != identity.org_id:
        raise ForbiddenError("org_id does not match the gateway credential")
    if payload.gateway_id is not None and payload.gateway_id != identity.gateway_id:
        raise ForbiddenError("gateway_id does not match the gateway credential")
    return await record_with_idempotency(
        request=request,
        db=db,
        recorder=recorder,
        payload=payload,
        org_id=identity.org_id,
        gateway_id=identity.gateway_id,
        caller=identity,
    )


@router.post("/sessions/{session_id}/end", response_model=SuccessEnvelope[SessionResponse] | SessionResponse)
async def end_session(
    request: Request,
    session_id: str,
    identity: GatewayIdentity = Depends(get_gateway_identity),
    db: AsyncSession = Depends(get_db),
    recorder: DecisionRecorder = Depends(get_recorder),
) -> dict:
    request_ctx = get_request_context(request)
    ended = await recorder.end_session(
        db,
        session_id=session_id,
        org_id=identity.org_id,
        actor_id=f"gateway:{identity.gateway_id}",
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )
    return success_response(request=request, data=session_payload(ended))
