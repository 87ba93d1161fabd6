from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.apps.api.deps import OperatorPrincipal, get_db, get_gateway_resolver, require_org_access
from trustplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from trustplane.apps.api.response import SuccessEnvelope, success_response
from trustplane.domain.models import Gateway
from trustplane.services.audit import get_request_context, record_event
from trustplane.services.auth.gateway_keys import GatewayIdentityResolver

router = APIRouter(tags=["gateways"], responses=DEFAULT_ERROR_RESPONSES)


class GatewayCreateRequest(BaseModel):
    id: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    name: str = Field(min_length=1, max_length=128)

    model_config = {"extra": "forbid"}


class GatewayResponse(BaseModel):
    id: str
    org_id: str
    name: str
    key_prefix: str
    created_at: datetime | None


class GatewayCreateResponse(GatewayResponse):
    # Returned once at registration; only the hash is stored.
    api_key: str


class GatewayListResponse(BaseModel):
    items: list[GatewayResponse]


def _gateway_payload(gateway: Gateway) -> GatewayResponse:
    return GatewayResponse(
        id=gateway.id,
        org_id=gateway.org_id,
        name=gateway.name,
        key_prefix=gateway.key_prefix,
        created_at=gateway.created_at,
    )


@router.post(
    "/orgs/{org_id}/gateways",
    response_model=SuccessEnvelope[GatewayCreateResponse] | GatewayCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_gateway(
    request: Request,
    org_id: str,
    payload: GatewayCreateRequest,
    principal: OperatorPrincipal = Depends(require_org_access("ORG_ADMIN")),
    db: AsyncSession = Depends(get_db),
    resolver: GatewayIdentityResolver = Depends(get_gateway_resolver),
) -> dict:
    gateway, raw_key = await resolver.register_gateway(
        db,
        org_id=org_id,
        gateway_id=payload.id,
        name=payload.name,
    )
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        org_id=org_id,
        user_id=principal.subject_id,
        action="GATEWAY_REGISTERED",
        resource=gateway.id,
        status="SUCCESS",
        details={"gatewayId": gateway.id, "keyPrefix": gateway.key_prefix},
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        commit=True,
        best_effort=True,
    )
    response_payload = GatewayCreateResponse(
        **_gateway_payload(gateway).model_dump(),
        api_key=raw_key,
    )
    return success_response(request=request, data=response_payload)


@router.get("/orgs/{org_id}/gateways", response_model=SuccessEnvelope[GatewayListResponse] | GatewayListResponse)
async def list_gateways(
    request: Request,
    org_id: str,
    _principal: OperatorPrincipal = Depends(require_org_access("SEC_ANALYST")),
    db: AsyncSession = Depends(get_db),
    resolver: GatewayIdentityResolver = Depends(get_gateway_resolver),
) -> dict:
    gateways = await resolver.list_gateways(db, org_id=org_id)
    payload = GatewayListResponse(items=[_gateway_payload(gateway) for gateway in gateways])
    return success_response(request=request, data=payload)
