from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.apps.api.deps import OperatorPrincipal, get_db, require_org_access, require_role
from trustplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from trustplane.apps.api.response import SuccessEnvelope, success_response
from trustplane.domain.models import Organization
from trustplane.services import organizations as org_service

router = APIRouter(prefix="/orgs", tags=["organizations"], responses=DEFAULT_ERROR_RESPONSES)


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    slug: str = Field(min_length=1, max_length=63)
    id: str | None = Field(default=None, min_length=1, max_length=64)

    model_config = {"extra": "forbid"}


class OrganizationPatchRequest(BaseModel):
    # Slug and id are immutable after provisioning.
    name: str = Field(min_length=1, max_length=128)

    model_config = {"extra": "forbid"}


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    created_at: datetime | None
    updated_at: datetime | None


class OrganizationListResponse(BaseModel):
    items: list[OrganizationResponse]


def _org_payload(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        slug=org.slug,
        created_at=org.created_at,
        updated_at=org.updated_at,
    )


@router.post(
    "",
    response_model=SuccessEnvelope[OrganizationResponse] | OrganizationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_organization(
    request: Request,
    payload: OrganizationCreateRequest,
    principal: OperatorPrincipal = Depends(require_role("SUPER_ADMIN")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await org_service.create_organization(
        db,
        name=payload.name,
        slug=payload.slug,
        org_id=payload.id,
        actor_id=principal.subject_id,
    )
    return success_response(request=request, data=_org_payload(org))


@router.get("", response_model=SuccessEnvelope[OrganizationListResponse] | OrganizationListResponse)
async def list_organizations(
    request: Request,
    _principal: OperatorPrincipal = Depends(require_role("SUPER_ADMIN")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    orgs = await org_service.list_organizations(db)
    return success_response(request=request, data=OrganizationListResponse(items=[_org_payload(org) for org in orgs]))


@router.get("/{org_id}", response_model=SuccessEnvelope[OrganizationResponse] | OrganizationResponse)
async def get_organization(
    request: Request,
    org_id: str,
    _principal: OperatorPrincipal = Depends(require_org_access("VIEWER")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await org_service.get_organization(db, org_id)
    return success_response(request=request, data=_org_payload(org))


@router.patch("/{org_id}", response_model=SuccessEnvelope[OrganizationResponse] | OrganizationResponse)
async def patch_organization(
    request: Request,
    org_id: str,
    payload: OrganizationPatchRequest,
    principal: OperatorPrincipal = Depends(require_org_access("ORG_ADMIN")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await org_service.rename_organization(
        db,
        org_id=org_id,
        name=payload.name,
        actor_id=principal.subject_id,
    )
    return success_response(request=request, data=_org_payload(org))
