from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.apps.api.deps import OperatorPrincipal, get_db, get_recorder, require_org_access
from trustplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from trustplane.apps.api.response import SuccessEnvelope, success_response
from trustplane.domain.models import AuditLog
from trustplane.services.recorder import DecisionRecorder

router = APIRouter(tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditLogResponse(BaseModel):
    id: int
    org_id: str
    user_id: str | None
    action: str
    resource: str | None
    status: str | None
    details: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    created_at: datetime | None


class AuditLogListResponse(BaseModel):
    items: list[AuditLogResponse]
    limit: int
    offset: int


def _audit_payload(entry: AuditLog) -> AuditLogResponse:
    return AuditLogResponse(
        id=entry.id,
        org_id=entry.org_id,
        user_id=entry.user_id,
        action=entry.action,
        resource=entry.resource,
        status=entry.status,
        details=entry.details,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        created_at=entry.created_at,
    )


@router.get("/orgs/{org_id}/audit-logs", response_model=SuccessEnvelope[AuditLogListResponse] | AuditLogListResponse)
async def list_audit_logs(
    request: Request,
    org_id: str,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    action: str | None = Query(default=None, max_length=64),
    _principal: OperatorPrincipal = Depends(require_org_access("SEC_ANALYST")),
    db: AsyncSession = Depends(get_db),
    recorder: DecisionRecorder = Depends(get_recorder),
) -> dict:
    # Newest first; ties on created_at fall back to the monotonic id.
    entries = await recorder.list_audit_logs(db, org_id=org_id, limit=limit, offset=offset, action=action)
    payload = AuditLogListResponse(
        items=[_audit_payload(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data=payload)
