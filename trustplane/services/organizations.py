from __future__ import annotations

import logging
import re
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.core.errors import ConflictError, NotFoundError, StoreUnavailableError, ValidationFailedError
from trustplane.domain.models import Organization
from trustplane.persistence.repos import organizations as org_repo
from trustplane.services.audit import build_audit_entry
from trustplane.services.resilience import read_from_store


logger = logging.getLogger(__name__)

_SLUG = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")


def normalize_slug(slug: str) -> str:
    cleaned = slug.strip().lower()
    if not _SLUG.match(cleaned):
        raise ValidationFailedError("slug must be lowercase letters, digits or dashes")
    return cleaned


async def _commit(session: AsyncSession, *, operation: str) -> None:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Organization id or slug already exists") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("organization_write_failed operation=%s", operation, exc_info=exc)
        raise StoreUnavailableError("Policy store unavailable") from exc


async def get_organization(session: AsyncSession, org_id: str) -> Organization:
    org = await read_from_store(lambda: org_repo.get_organization(session, org_id), operation="get_organization")
    if org is None:
        raise NotFoundError(f"Organization {org_id} not found")
    return org


async def get_organization_by_slug(session: AsyncSession, slug: str) -> Organization:
    org = await read_from_store(
        lambda: org_repo.get_organization_by_slug(session, slug),
        operation="get_organization_by_slug",
    )
    if org is None:
        raise NotFoundError(f"Organization {slug} not found")
    return org


async def list_organizations(session: AsyncSession) -> list[Organization]:
    return await read_from_store(lambda: org_repo.list_organizations(session), operation="list_organizations")


async def create_organization(
    session: AsyncSession,
    *,
    name: str,
    slug: str,
    org_id: str | None = None,
    actor_id: str | None = None,
) -> Organization:
    # Slugs are immutable tenant keys; reject duplicates before insert for a clean 409.
    resolved_slug = normalize_slug(slug)
    existing = await read_from_store(
        lambda: org_repo.get_organization_by_slug(session, resolved_slug),
        operation="get_organization_by_slug",
    )
    if existing is not None:
        raise ConflictError(f"Organization slug {resolved_slug} already exists")
    org = org_repo.add_organization(session, org_id=org_id or str(uuid4()), name=name, slug=resolved_slug)
    session.add(
        build_audit_entry(
            org_id=org.id,
            user_id=actor_id,
            action="ORG_CREATED",
            resource=org.id,
            status="SUCCESS",
            details={"slug": resolved_slug, "name": name},
        )
    )
    await _commit(session, operation="create_organization")
    logger.info("organization_created org_id=%s slug=%s", org.id, resolved_slug)
    return org


async def rename_organization(
    session: AsyncSession,
    *,
    org_id: str,
    name: str,
    actor_id: str | None = None,
) -> Organization:
    org = await get_organization(session, org_id)
    if org.name == name:
        return org
    previous = org.name
    org.name = name
    session.add(
        build_audit_entry(
            org_id=org.id,
            user_id=actor_id,
            action="ORG_UPDATED",
            resource=org.id,
            status="SUCCESS",
            details={"previousName": previous, "name": name},
        )
    )
    await _commit(session, operation="rename_organization")
    return org
