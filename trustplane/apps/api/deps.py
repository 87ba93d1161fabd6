from __future__ import annotations

from typing import AsyncGenerator
import asyncio
import logging
import time

from fastapi import Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.core.config import get_settings
from trustplane.core.errors import ForbiddenError, UnauthorizedError
from trustplane.persistence.db import get_session
from trustplane.services.auth.gateway_keys import GatewayIdentity, GatewayIdentityResolver, hash_api_key
from trustplane.services.auth.operator_tokens import decode_operator_token, role_allows
from trustplane.services.policy.engine import PolicyDecisionEngine
from trustplane.services.policy.store import PolicyStore
from trustplane.services.recorder import DecisionRecorder


logger = logging.getLogger(__name__)

SUPER_ADMIN = "SUPER_ADMIN"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_decision_engine(request: Request) -> PolicyDecisionEngine:
    return request.app.state.decision_engine


def get_policy_store(request: Request) -> PolicyStore:
    return request.app.state.policy_store


def get_recorder(request: Request) -> DecisionRecorder:
    return request.app.state.recorder


def get_gateway_resolver(request: Request) -> GatewayIdentityResolver:
    return request.app.state.gateway_resolver


class OperatorPrincipal(BaseModel):
    # Capture the authenticated operator used for org scoping and RBAC.
    subject_id: str
    org_id: str
    role: str
    email: str | None = None
    auth_method: str = "jwt"

    @property
    def is_super_admin(self) -> bool:
        return self.role == SUPER_ADMIN

    def org_scope(self) -> str | None:
        # Super admins act across organizations; everyone else is pinned to their own.
        return None if self.is_super_admin else self.org_id


_gateway_auth_cache: dict[str, tuple[float, GatewayIdentity]] = {}
_gateway_auth_cache_lock = asyncio.Lock()


async def _get_cached_identity(key_hash: str, ttl_s: int) -> GatewayIdentity | None:
    # Cache gateway identities briefly to reduce store load between requests.
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _gateway_auth_cache_lock:
        entry = _gateway_auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, identity = entry
        if expires_at <= now:
            _gateway_auth_cache.pop(key_hash, None)
            return None
        return identity


async def _set_cached_identity(key_hash: str, identity: GatewayIdentity, ttl_s: int) -> None:
    # Store identities with a fixed expiry to keep revocations responsive.
    if ttl_s <= 0:
        return
    async with _gateway_auth_cache_lock:
        _gateway_auth_cache[key_hash] = (time.time() + ttl_s, identity)


def clear_gateway_auth_cache() -> None:
    _gateway_auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("Missing or invalid bearer token")
    return parts[1]


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI without forcing usage in handlers.
    return idempotency_key


async def get_gateway_identity(
    request: Request,
    db: AsyncSession = Depends(get_db),
    resolver: GatewayIdentityResolver = Depends(get_gateway_resolver),
) -> GatewayIdentity:
    settings = get_settings()
    raw_key = request.headers.get(settings.gateway_api_key_header)
    if not raw_key or not raw_key.strip():
        raise UnauthorizedError("API key required")
    key_hash = hash_api_key(raw_key.strip())
    cached = await _get_cached_identity(key_hash, settings.gateway_auth_cache_ttl_s)
    if cached is not None:
        return cached
    identity = await resolver.resolve(db, raw_key)
    if identity is None:
        logger.warning("gateway_auth_failed path=%s", request.url.path)
        raise UnauthorizedError("Invalid API key")
    await _set_cached_identity(key_hash, identity, settings.gateway_auth_cache_ttl_s)
    return identity


async def get_current_operator(request: Request) -> OperatorPrincipal:
    bearer_token = _parse_bearer_token(request.headers.get("Authorization"))
    if not bearer_token:
        raise UnauthorizedError("Missing bearer token")
    claims = decode_operator_token(bearer_token)
    return OperatorPrincipal(
        subject_id=claims.sub,
        org_id=claims.org_id,
        role=claims.role,
        email=claims.email,
    )


def ensure_org_scope(principal: OperatorPrincipal, org_id: str) -> None:
    # Tokens are scoped to their org unless they belong to a super admin.
    if principal.is_super_admin:
        return
    if principal.org_id != org_id:
        logger.warning(
            "org_scope_denied subject_id=%s token_org_id=%s requested_org_id=%s",
            principal.subject_id,
            principal.org_id,
            org_id,
        )
        raise ForbiddenError("Organization is outside the caller's scope")


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: OperatorPrincipal = Depends(get_current_operator)) -> OperatorPrincipal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.warning(
                "rbac_forbidden subject_id=%s role=%s required_role=%s",
                principal.subject_id,
                principal.role,
                minimum_role,
            )
            raise ForbiddenError("Insufficient role for this operation")
        return principal

    return _dependency


def require_org_access(minimum_role: str):
    # Combine RBAC with the org scope taken from the route path.
    async def _dependency(
        org_id: str,
        principal: OperatorPrincipal = Depends(require_role(minimum_role)),
    ) -> OperatorPrincipal:
        ensure_org_scope(principal, org_id)
        return principal

    return _dependency
