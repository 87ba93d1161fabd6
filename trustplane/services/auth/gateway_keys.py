from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
import secrets

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.core.errors import ConflictError, NotFoundError, StoreUnavailableError
from trustplane.domain.models import Gateway
from trustplane.persistence.guards import require_org_id
from trustplane.persistence.repos import gateways as gateway_repo
from trustplane.persistence.repos import organizations as org_repo
from trustplane.services.resilience import read_from_store


logger = logging.getLogger(__name__)

GATEWAY_KEY_PREFIX = "tpgw"


@dataclass(frozen=True)
class GatewayIdentity:
    # Tenant identity bound to a gateway credential.
    org_id: str
    gateway_id: str
    name: str | None = None


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def display_prefix(raw_key: str) -> str:
    return raw_key[:12]


def generate_gateway_key(gateway_id: str) -> str:
    # Embed the gateway id in the key so operators can trace secrets safely.
    return f"{GATEWAY_KEY_PREFIX}_{gateway_id}_{secrets.token_urlsafe(32)}"


class GatewayIdentityResolver:
    async def resolve(self, session: AsyncSession, api_key: str | None) -> GatewayIdentity | None:
        if not api_key or not api_key.strip():
            return None
        gateway = await read_from_store(
            lambda: gateway_repo.get_gateway_by_key_hash(session, hash_api_key(api_key.strip())),
            operation="resolve_gateway",
        )
        if gateway is None:
            return None
        return GatewayIdentity(org_id=gateway.org_id, gateway_id=gateway.id, name=gateway.name)

    async def register_gateway(
        self,
        session: AsyncSession,
        *,
        org_id: str,
        gateway_id: str,
        name: str,
        raw_key: str | None = None,
    ) -> tuple[Gateway, str]:
        """Register a gateway and return it with its raw key.

        The raw key is never stored; only its hash and a display prefix are.
        ``raw_key`` lets provisioning scripts pin a known demo credential.
        """
        require_org_id(org_id)
        org = await read_from_store(
            lambda: org_repo.get_organization(session, org_id),
            operation="get_organization",
        )
        if org is None:
            raise NotFoundError(f"Organization {org_id} not found")
        existing = await read_from_store(
            lambda: gateway_repo.get_gateway(session, org_id=org_id, gateway_id=gateway_id),
            operation="get_gateway",
        )
        if existing is not None:
            raise ConflictError(f"Gateway {gateway_id} already exists")

        resolved_key = raw_key or generate_gateway_key(gateway_id)
        gateway = Gateway(
            org_id=org_id,
            id=gateway_id,
            name=name,
            key_prefix=display_prefix(resolved_key),
            key_hash=hash_api_key(resolved_key),
        )
        session.add(gateway)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError("Gateway id or key already registered") from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("gateway_register_failed org_id=%s gateway_id=%s", org_id, gateway_id, exc_info=exc)
            raise StoreUnavailableError("Policy store unavailable") from exc
        logger.info("gateway_registered org_id=%s gateway_id=%s", org_id, gateway_id)
        return gateway, resolved_key

    async def list_gateways(self, session: AsyncSession, *, org_id: str) -> list[Gateway]:
        return await read_from_store(
            lambda: gateway_repo.list_gateways(session, org_id=org_id),
            operation="list_gateways",
        )
