from __future__ import annotations

import pytest

from trustplane.core.errors import InternalError, StoreUnavailableError
from trustplane.domain.policies import AccessRequest, PolicyCondition, PolicySnapshot
from trustplane.services.policy.engine import (
    NO_MATCH_REASON,
    PolicyDecisionEngine,
    evaluate_policy_set,
    order_by_priority,
)


def _policy(policy_id: str, priority: int, effect: str, name: str | None = None, **conditions) -> PolicySnapshot:
    return PolicySnapshot(
        id=policy_id,
        org_id="org-1",
        name=name or policy_id,
        priority=priority,
        effect=effect,
        conditions=PolicyCondition.model_validate(conditions),
    )


def _request(**overrides) -> AccessRequest:
    values = {
        "userId": "u-1",
        "userRole": "ENGINEER",
        "deviceTrustLevel": "HIGH",
        "country": "US",
        "resource": "https://wiki.acme.com",
    }
    values.update(overrides)
    return AccessRequest.model_validate(values)


class _StaticCache:
    def __init__(self, policies: list[PolicySnapshot] | Exception) -> None:
        self._policies = policies
        self.calls: list[str] = []

    async def get(self, org_id: str) -> list[PolicySnapshot]:
        self.calls.append(org_id)
        if isinstance(self._policies, Exception):
            raise self._policies
        return list(self._policies)


def test_high_risk_country_outranks_admin_allow() -> None:
    policies = [
        _policy("admin-allow", 50, "ALLOW", roles=["ORG_ADMIN"]),
        _policy("geo-block", 150, "DENY", name="Block High-Risk Countries", countries=["CN", "RU"]),
        _policy("untrusted", 200, "DENY", deviceTrustLevels=["UNTRUSTED"]),
    ]
    result = evaluate_policy_set(policies, _request(userRole="ORG_ADMIN", country="CN"))
    assert result.decision == "DENY"
    assert result.matched_policy_ids == ["geo-block"]
    assert "Block High-Risk Countries" in result.reason


def test_no_match_is_default_deny() -> None:
    policies = [
        _policy("geo", 100, "ALLOW", countries=["US"], resources=["ssh://"]),
        _policy("admins", 50, "ALLOW", roles=["ORG_ADMIN"]),
    ]
    result = evaluate_policy_set(policies, _request(resource="https://payroll.acme.com"))
    assert result.decision == "DENY"
    assert result.matched_policy_ids == []
    assert result.reason == NO_MATCH_REASON


def test_empty_policy_set_denies() -> None:
    result = evaluate_policy_set([], _request())
    assert result.decision == "DENY"
    assert result.matched_policy_ids == []


def test_unconditional_policy_matches_everything() -> None:
    result = evaluate_policy_set([_policy("catch-all", 1, "ALLOW")], _request(country="BR", userRole="VIEWER"))
    assert result.decision == "ALLOW"
    assert result.matched_policy_ids == ["catch-all"]


def test_priority_ties_resolve_to_earliest_inserted() -> None:
    policies = [
        _policy("first", 10, "DENY"),
        _policy("second", 10, "ALLOW"),
        _policy("low", 5, "ALLOW"),
    ]
    assert [policy.id for policy in order_by_priority(policies)] == ["first", "second", "low"]
    result = evaluate_policy_set(policies, _request())
    assert result.matched_policy_ids == ["first"]
    assert result.decision == "DENY"


def test_negative_priorities_sort_below_zero() -> None:
    policies = [_policy("neg", -5, "ALLOW"), _policy("zero", 0, "DENY", countries=["FR"])]
    assert [policy.id for policy in order_by_priority(policies)] == ["zero", "neg"]
    assert evaluate_policy_set(policies, _request()).matched_policy_ids == ["neg"]


@pytest.mark.asyncio
async def test_engine_reads_policies_for_requested_org() -> None:
    cache = _StaticCache([_policy("allow-all", 1, "ALLOW")])
    engine = PolicyDecisionEngine(cache)  # type: ignore[arg-type]
    result = await engine.evaluate("org-7", _request())
    assert result.decision == "ALLOW"
    assert cache.calls == ["org-7"]


@pytest.mark.asyncio
async def test_engine_propagates_store_unavailable() -> None:
    engine = PolicyDecisionEngine(_StaticCache(StoreUnavailableError("down")))  # type: ignore[arg-type]
    with pytest.raises(StoreUnavailableError):
        await engine.evaluate("org-1", _request())


@pytest.mark.asyncio
async def test_engine_never_turns_unexpected_errors_into_decisions() -> None:
    engine = PolicyDecisionEngine(_StaticCache(RuntimeError("boom")))  # type: ignore[arg-type]
    with pytest.raises(InternalError):
        await engine.evaluate("org-1", _request())
