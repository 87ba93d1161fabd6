from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB on Postgres, plain JSON on SQLite for throwaway test databases.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
MonotonicId = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    # Stamp rows in Python so ordering keeps sub-second precision on every backend.
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Human-readable tenant key; immutable after provisioning.
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class Policy(Base):
    __tablename__ = "policies"
    __table_args__ = (
        Index("ix_policies_org_seq", "org_id", "seq"),
        Index("ix_policies_org_priority", "org_id", text("priority DESC")),
    )

    # Insertion sequence breaks priority ties; created_at can collide within a clock tick.
    seq: Mapped[int] = mapped_column(MonotonicId, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    # Precedence weight: the engine evaluates higher values first.
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    conditions_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    effect: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class Gateway(Base):
    __tablename__ = "gateways"

    # Gateway ids are operator-chosen (e.g. "acme-sfo-1") and unique per org.
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), primary_key=True)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Session(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_org_started_at", "org_id", text("started_at DESC")),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    gateway_id: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, default="ACTIVE")

    hits: Mapped[list["PolicyHit"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PolicyHit.hit_at",
    )


class PolicyHit(Base):
    __tablename__ = "policy_hits"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("sessions.id", ondelete="CASCADE"), index=True
    )
    policy_id: Mapped[str] = mapped_column(String, index=True)
    decision: Mapped[str] = mapped_column(String)
    resource: Mapped[str | None] = mapped_column(String, nullable=True)
    country: Mapped[str | None] = mapped_column(String, nullable=True)
    device_trust_level: Mapped[str | None] = mapped_column(String, nullable=True)
    hit_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, index=True)

    session: Mapped[Session] = relationship(back_populates="hits")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_org_created_at", "org_id", text("created_at DESC")),
    )

    # Monotonic id keeps insertion order stable for pagination ties.
    id: Mapped[int] = mapped_column(MonotonicId, primary_key=True, autoincrement=True)
    # No foreign keys: audit rows outlive sessions and policies.
    org_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    resource: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, index=True)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint(
            "org_id",
            "actor_id",
            "method",
            "path",
            "idem_key",
            name="uq_idempotency_records_scope",
        ),
        Index("ix_idempotency_records_expires_at", "expires_at"),
    )

    # Store request/response snapshots to enable safe idempotent retries.
    id: Mapped[int] = mapped_column(MonotonicId, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str] = mapped_column(String, index=True)
    method: Mapped[str] = mapped_column(String)
    path: Mapped[str] = mapped_column(String)
    idem_key: Mapped[str] = mapped_column(String)
    request_hash: Mapped[str] = mapped_column(String)
    response_status: Mapped[int] = mapped_column(Integer)
    response_body_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
