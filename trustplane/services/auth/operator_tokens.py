from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trustplane.core.config import get_settings
from trustplane.core.errors import UnauthorizedError
from trustplane.domain.policies import ROLE_ORDER, UserRole


class OperatorClaims(BaseModel):
    # Claims carried by tokens from the external issuer.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sub: str = Field(min_length=1)
    org_id: str = Field(alias="orgId", min_length=1)
    role: UserRole
    email: str | None = None


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def decode_operator_token(token: str) -> OperatorClaims:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            leeway=settings.jwt_leeway_s,
        )
    except jwt.ExpiredSignatureError as exc:
        raise UnauthorizedError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnauthorizedError("Invalid token") from exc
    try:
        return OperatorClaims.model_validate(payload)
    except ValidationError as exc:
        raise UnauthorizedError("Token claims are incomplete") from exc


def issue_operator_token(
    *,
    sub: str,
    org_id: str,
    role: UserRole,
    email: str | None = None,
    expires_in_s: int = 3600,
) -> str:
    # Dev and test helper; production tokens come from the external issuer.
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": sub,
        "orgId": org_id,
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in_s),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
