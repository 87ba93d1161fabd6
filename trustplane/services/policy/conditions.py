from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from trustplane.domain.policies import AccessRequest, PolicyCondition, TimeWindow


WILDCARD_RESOURCE = "*"


def _allows(values: list[str] | None, candidate: str) -> bool:
    # An absent or empty list places no constraint on the dimension.
    if not values:
        return True
    return candidate in values


def resource_matches(patterns: list[str] | None, resource: str) -> bool:
    # Patterns are substrings of the requested resource; "*" admits everything.
    if not patterns:
        return True
    return any(pattern == WILDCARD_RESOURCE or pattern in resource for pattern in patterns)


def time_window_matches(
    window: TimeWindow | None,
    *,
    now: datetime | None = None,
    default_timezone: str = "UTC",
) -> bool:
    """Check ``start <= now <= end`` on the local wall clock.

    Times are compared as ``HH:mm`` strings, so both bounds are inclusive to
    the minute. A window whose start is later than its end (for example
    ``22:00``-``06:00``) never matches: windows that cross midnight are not
    supported and must be split into two policies.
    """
    if window is None:
        return True
    zone = ZoneInfo(window.timezone or default_timezone)
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    local_hhmm = current.astimezone(zone).strftime("%H:%M")
    return window.start <= local_hhmm <= window.end


def matches_policy(
    conditions: PolicyCondition,
    request: AccessRequest,
    *,
    now: datetime | None = None,
    default_timezone: str = "UTC",
) -> bool:
    # Dimensions combine with AND; values inside one dimension combine with OR.
    if not _allows(conditions.roles, request.user_role):
        return False
    if not _allows(conditions.device_trust_levels, request.device_trust_level):
        return False
    if not _allows(conditions.countries, request.country):
        return False
    if not resource_matches(conditions.resources, request.resource):
        return False
    return time_window_matches(conditions.time_window, now=now, default_timezone=default_timezone)
