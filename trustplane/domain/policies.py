from __future__ import annotations

from datetime import datetime
import re
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


UserRole = Literal["SUPER_ADMIN", "ORG_ADMIN", "SEC_ANALYST", "ENGINEER", "VIEWER"]
DeviceTrustLevel = Literal["HIGH", "MEDIUM", "LOW", "UNTRUSTED"]
PolicyEffect = Literal["ALLOW", "DENY"]

ROLE_ORDER: dict[str, int] = {
    "VIEWER": 1,
    "ENGINEER": 2,
    "SEC_ANALYST": 3,
    "ORG_ADMIN": 4,
    "SUPER_ADMIN": 5,
}

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class _WireModel(BaseModel):
    # Accept both snake_case and the camelCase payloads edge gateways send.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class TimeWindow(_WireModel):
    start: str
    end: str
    timezone: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError("time must use 24h HH:mm format")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_zone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone: {value}") from exc
        return value


class PolicyCondition(_WireModel):
    roles: list[UserRole] | None = None
    device_trust_levels: list[DeviceTrustLevel] | None = None
    countries: list[str] | None = None
    resources: list[str] | None = None
    time_window: TimeWindow | None = None

    @field_validator("countries")
    @classmethod
    def _upper_countries(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return [item.strip().upper() for item in value]


class AccessRequest(_WireModel):
    user_id: str = Field(min_length=1)
    user_role: UserRole
    device_trust_level: DeviceTrustLevel
    country: str = Field(min_length=2, max_length=8)
    resource: str = Field(min_length=1)
    action: str | None = None

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.strip().upper()


class PolicyInput(_WireModel):
    name: str = Field(min_length=1, max_length=128)
    priority: int
    conditions: PolicyCondition = Field(default_factory=PolicyCondition)
    effect: PolicyEffect
    description: str | None = Field(default=None, max_length=1024)


class PolicySnapshot(BaseModel):
    """Read-only projection of a stored policy.

    This is the only policy shape the cache holds and the engine sees. It is
    rebuilt from the store on every cache miss and never written back.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    org_id: str
    name: str
    priority: int
    effect: PolicyEffect
    conditions: PolicyCondition
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DecisionTelemetry(_WireModel):
    # org_id and gateway_id are optional on the gateway boundary, where the key supplies them.
    org_id: str | None = None
    gateway_id: str | None = None
    user_id: str = Field(min_length=1)
    policy_id: str = Field(min_length=1)
    decision: PolicyEffect
    resource: str | None = None
    country: str | None = None
    device_trust_level: DeviceTrustLevel | None = None
    session_id: str | None = None
