from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from trustplane.domain.models import AuditLog
from trustplane.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "apikey", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


def build_audit_entry(
    *,
    org_id: str,
    action: str,
    user_id: str | None = None,
    resource: str | None = None,
    status: str | None = None,
    details: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    return AuditLog(
        org_id=org_id,
        user_id=user_id,
        action=action,
        resource=resource,
        status=status,
        details=sanitize_metadata(details or {}),
        ip_address=ip_address,
        user_agent=user_agent,
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    org_id: str,
    action: str,
    user_id: str | None = None,
    resource: str | None = None,
    status: str | None = None,
    details: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    """Append an audit entry outside the decision-recording transaction.

    Operator actions (org provisioning, gateway registration) are audited
    best-effort; a failed write is logged and the caller proceeds. Pass
    ``best_effort=False`` to re-raise instead.
    """
    entry = build_audit_entry(
        org_id=org_id,
        action=action,
        user_id=user_id,
        resource=resource,
        status=status,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                logger.warning("audit_event_write_failed action=%s org_id=%s", action, org_id, exc_info=exc)
                if not best_effort:
                    raise
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(entry)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        logger.warning("audit_event_write_failed action=%s org_id=%s", action, org_id, exc_info=exc)
        if not best_effort:
            raise
