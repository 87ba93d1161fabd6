from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.domain.models import Organization
from trustplane.persistence.guards import require_org_id


async def get_organization(session: AsyncSession, org_id: str) -> Organization | None:
    require_org_id(org_id)
    result = await session.execute(select(Organization).where(Organization.id == org_id))
    return result.scalar_one_or_none()


async def get_organization_by_slug(session: AsyncSession, slug: str) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.slug == slug))
    return result.scalar_one_or_none()


async def list_organizations(session: AsyncSession) -> list[Organization]:
    result = await session.execute(select(Organization).order_by(Organization.created_at.asc()))
    return list(result.scalars().all())


def add_organization(session: AsyncSession, *, org_id: str, name: str, slug: str) -> Organization:
    # Caller owns the transaction; slug uniqueness is enforced by the table.
    require_org_id(org_id)
    org = Organization(id=org_id, name=name, slug=slug)
    session.add(org)
    return org
