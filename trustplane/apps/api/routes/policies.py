from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.apps.api.deps import (
    OperatorPrincipal,
    get_db,
    get_decision_engine,
    get_policy_store,
    idempotency_key_header,
    require_org_access,
)
from trustplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from trustplane.apps.api.response import SuccessEnvelope, success_response
from trustplane.domain.models import Policy
from trustplane.domain.policies import AccessRequest, PolicyInput
from trustplane.services import organizations as org_service
from trustplane.services.audit import get_request_context
from trustplane.services.idempotency import begin_idempotent_write, complete_idempotent_write
from trustplane.services.policy.engine import PolicyDecisionEngine, PolicyEvaluationResult
from trustplane.services.policy.store import PolicyStore

router = APIRouter(tags=["policies"], responses=DEFAULT_ERROR_RESPONSES)


class PolicyResponse(BaseModel):
    id: str
    org_id: str
    name: str
    priority: int
    conditions: dict[str, Any]
    effect: str
    description: str | None
    created_by: str | None
    created_at: datetime | None
    updated_at: datetime | None


class PolicyListResponse(BaseModel):
    items: list[PolicyResponse]


class EvaluationResponse(BaseModel):
    decision: str
    matched_policy_ids: list[str]
    reason: str


def _policy_payload(policy: Policy) -> PolicyResponse:
    return PolicyResponse(
        id=policy.id,
        org_id=policy.org_id,
        name=policy.name,
        priority=policy.priority,
        conditions=policy.conditions_json or {},
        effect=policy.effect,
        description=policy.description,
        created_by=policy.created_by,
        created_at=policy.created_at,
        updated_at=policy.updated_at,
    )


def evaluation_payload(result: PolicyEvaluationResult) -> EvaluationResponse:
    return EvaluationResponse(
        decision=result.decision,
        matched_policy_ids=list(result.matched_policy_ids),
        reason=result.reason,
    )


@router.get("/orgs/{org_id}/policies", response_model=SuccessEnvelope[PolicyListResponse] | PolicyListResponse)
async def list_policies(
    request: Request,
    org_id: str,
    _principal: OperatorPrincipal = Depends(require_org_access("VIEWER")),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_policy_store),
) -> dict:
    # Store order (insertion order); the engine applies precedence at evaluation time.
    policies = await store.list_policies(db, org_id=org_id)
    payload = PolicyListResponse(items=[_policy_payload(policy) for policy in policies])
    return success_response(request=request, data=payload)


@router.post(
    "/orgs/{org_id}/policies",
    response_model=SuccessEnvelope[PolicyResponse] | PolicyResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_policy(
    request: Request,
    org_id: str,
    payload: PolicyInput,
    _idempotency_key: str | None = Depends(idempotency_key_header),
    principal: OperatorPrincipal = Depends(require_org_access("ORG_ADMIN")),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_policy_store),
):
    write, replay = await begin_idempotent_write(
        request=request, db=db, org_id=org_id, caller=principal, payload=payload
    )
    if replay is not None:
        return replay

    request_ctx = get_request_context(request)
    policy = await store.create_policy(
        db,
        org_id=org_id,
        payload=payload,
        actor_id=principal.subject_id,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )
    payload_body = success_response(request=request, data=_policy_payload(policy))
    await complete_idempotent_write(
        db, write, status_code=status.HTTP_201_CREATED, body=jsonable_encoder(payload_body)
    )
    return payload_body


@router.post("/orgs/{org_id}/evaluate", response_model=SuccessEnvelope[EvaluationResponse] | EvaluationResponse)
async def evaluate(
    request: Request,
    org_id: str,
    payload: AccessRequest,
    _principal: OperatorPrincipal = Depends(require_org_access("VIEWER")),
    db: AsyncSession = Depends(get_db),
    engine: PolicyDecisionEngine = Depends(get_decision_engine),
) -> dict:
    # Same engine as the gateway path, with the org taken from the route.
    # Gateway credentials imply an org; operators can name one that does not exist.
    await org_service.get_organization(db, org_id)
    result = await engine.evaluate(org_id, payload)
    return success_response(request=request, data=evaluation_payload(result))
