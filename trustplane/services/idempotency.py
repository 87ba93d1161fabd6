from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any, Union

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trustplane.apps.api.response import is_versioned_request
from trustplane.core.config import get_settings
from trustplane.core.errors import ConflictError, ValidationFailedError
from trustplane.domain.models import IdempotencyRecord
from trustplane.services.auth.gateway_keys import GatewayIdentity
from trustplane.services.resilience import read_from_store

if TYPE_CHECKING:
    from trustplane.apps.api.deps import OperatorPrincipal


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotency-Replayed"
MAX_KEY_LENGTH = 128

Caller = Union[GatewayIdentity, "OperatorPrincipal"]


@dataclass(frozen=True)
class IdempotentWrite:
    """Scope of one keyed write: who sent which key to which route, with what payload."""

    org_id: str
    actor_id: str
    method: str
    path: str
    key: str
    request_hash: str


def actor_key(caller: Caller) -> str:
    # Gateways and operators share one table; prefix so their ids never collide.
    if isinstance(caller, GatewayIdentity):
        return f"gateway:{caller.gateway_id}"
    return f"operator:{caller.subject_id}"


def payload_hash(payload: BaseModel) -> str:
    serialized = json.dumps(payload.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _parse_key(raw: str) -> str:
    cleaned = raw.strip()
    if not cleaned:
        raise ValidationFailedError(f"{IDEMPOTENCY_HEADER} is empty", details={"header": IDEMPOTENCY_HEADER})
    if len(cleaned) > MAX_KEY_LENGTH:
        raise ValidationFailedError(
            f"{IDEMPOTENCY_HEADER} exceeds {MAX_KEY_LENGTH} characters",
            details={"header": IDEMPOTENCY_HEADER},
        )
    return cleaned


async def _find_live_record(db: AsyncSession, write: IdempotentWrite) -> IdempotencyRecord | None:
    result = await db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.org_id == write.org_id,
            IdempotencyRecord.actor_id == write.actor_id,
            IdempotencyRecord.method == write.method,
            IdempotencyRecord.path == write.path,
            IdempotencyRecord.idem_key == write.key,
            IdempotencyRecord.expires_at > datetime.now(timezone.utc),
        )
    )
    return result.scalar_one_or_none()


async def begin_idempotent_write(
    *,
    request: Request,
    db: AsyncSession,
    org_id: str,
    caller: Caller,
    payload: BaseModel,
) -> tuple[IdempotentWrite | None, JSONResponse | None]:
    """Resolve the Idempotency-Key of a versioned write.

    Returns ``(write, None)`` when the handler should run and then call
    :func:`complete_idempotent_write`, ``(None, replay)`` when an earlier
    response for the same key and payload should be returned as-is, and
    ``(None, None)`` when no key was sent. Reusing a key with a different
    payload raises :class:`ConflictError`.
    """
    settings = get_settings()
    if not settings.idempotency_enabled or not is_versioned_request(request):
        return None, None
    raw_key = request.headers.get(IDEMPOTENCY_HEADER)
    if raw_key is None:
        return None, None
    write = IdempotentWrite(
        org_id=org_id,
        actor_id=actor_key(caller),
        method=request.method.upper(),
        path=request.url.path,
        key=_parse_key(raw_key),
        request_hash=payload_hash(payload),
    )
    record = await read_from_store(lambda: _find_live_record(db, write), operation="idempotency_lookup")
    if record is None:
        return write, None
    if record.request_hash != write.request_hash:
        raise ConflictError(
            f"{IDEMPOTENCY_HEADER} already used with a different payload",
            details={"key": write.key},
        )
    logger.info("idempotent_replay org_id=%s actor=%s path=%s", org_id, write.actor_id, write.path)
    replay = JSONResponse(
        content=record.response_body_json,
        status_code=record.response_status,
        headers={REPLAY_HEADER: "true"},
    )
    return None, replay


async def complete_idempotent_write(
    db: AsyncSession,
    write: IdempotentWrite | None,
    *,
    status_code: int,
    body: Any,
) -> None:
    # The write itself is already committed; a lost record only costs a future replay.
    if write is None:
        return
    ttl_hours = get_settings().idempotency_ttl_hours
    db.add(
        IdempotencyRecord(
            org_id=write.org_id,
            actor_id=write.actor_id,
            method=write.method,
            path=write.path,
            idem_key=write.key,
            request_hash=write.request_hash,
            response_status=status_code,
            response_body_json=body,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=ttl_hours),
        )
    )
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("idempotency_store_failed org_id=%s actor=%s", write.org_id, write.actor_id)
