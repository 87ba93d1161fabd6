from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from trustplane.core.config import get_settings
from trustplane.core.errors import UnauthorizedError
from trustplane.services.auth.operator_tokens import decode_operator_token, issue_operator_token, role_allows


def test_issued_token_round_trips_claims() -> None:
    token = issue_operator_token(sub="u-1", org_id="org-1", role="SEC_ANALYST", email="a@acme.com")
    claims = decode_operator_token(token)
    assert claims.sub == "u-1"
    assert claims.org_id == "org-1"
    assert claims.role == "SEC_ANALYST"


def test_expired_token_is_rejected() -> None:
    settings = get_settings()
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = jwt.encode(
        {"sub": "u", "orgId": "o", "role": "VIEWER", "exp": past},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    with pytest.raises(UnauthorizedError, match="expired"):
        decode_operator_token(token)


def test_wrong_signature_is_rejected() -> None:
    token = jwt.encode({"sub": "u", "orgId": "o", "role": "VIEWER"}, "not-the-secret-but-long-enough-32b", algorithm="HS256")
    with pytest.raises(UnauthorizedError):
        decode_operator_token(token)


def test_missing_or_unknown_claims_are_rejected() -> None:
    settings = get_settings()
    for claims in ({"sub": "u", "role": "VIEWER"}, {"sub": "u", "orgId": "o", "role": "ROOT"}):
        token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        with pytest.raises(UnauthorizedError):
            decode_operator_token(token)


def test_garbage_token_is_rejected() -> None:
    with pytest.raises(UnauthorizedError):
        decode_operator_token("not-a-jwt")


def test_role_ordering() -> None:
    assert role_allows(role="SUPER_ADMIN", minimum_role="ORG_ADMIN") is True
    assert role_allows(role="ORG_ADMIN", minimum_role="ORG_ADMIN") is True
    assert role_allows(role="SEC_ANALYST", minimum_role="ORG_ADMIN") is False
    assert role_allows(role="ENGINEER", minimum_role="VIEWER") is True
    assert role_allows(role="UNKNOWN", minimum_role="VIEWER") is False
