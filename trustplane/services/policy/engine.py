from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import TYPE_CHECKING, Iterable

from trustplane.core.config import get_settings
from trustplane.core.errors import InternalError, TrustplaneError
from trustplane.domain.policies import AccessRequest, PolicyEffect, PolicySnapshot
from trustplane.services.policy.conditions import matches_policy
from trustplane.services.telemetry import increment_counter

if TYPE_CHECKING:
    from trustplane.services.policy.cache import PolicyCache


logger = logging.getLogger(__name__)

NO_MATCH_REASON = "No matching policy found"


@dataclass(frozen=True)
class PolicyEvaluationResult:
    # Deterministic outcome returned to gateways and recorded by telemetry.
    decision: PolicyEffect
    matched_policy_ids: list[str] = field(default_factory=list)
    reason: str = NO_MATCH_REASON

    def as_payload(self) -> dict[str, object]:
        return {
            "decision": self.decision,
            "matched_policy_ids": list(self.matched_policy_ids),
            "reason": self.reason,
        }


def order_by_priority(policies: Iterable[PolicySnapshot]) -> list[PolicySnapshot]:
    # Highest priority first; sorted() is stable so ties keep store order.
    return sorted(policies, key=lambda policy: -policy.priority)


def evaluate_policy_set(
    policies: Iterable[PolicySnapshot],
    request: AccessRequest,
    *,
    now: datetime | None = None,
    default_timezone: str = "UTC",
) -> PolicyEvaluationResult:
    # First matching policy wins; an empty match set is a default deny.
    for policy in order_by_priority(policies):
        if matches_policy(policy.conditions, request, now=now, default_timezone=default_timezone):
            return PolicyEvaluationResult(
                decision=policy.effect,
                matched_policy_ids=[policy.id],
                reason=f"Matched policy: {policy.name}",
            )
    return PolicyEvaluationResult(decision="DENY", matched_policy_ids=[], reason=NO_MATCH_REASON)


class PolicyDecisionEngine:
    def __init__(self, cache: "PolicyCache", *, default_timezone: str | None = None) -> None:
        self._cache = cache
        self._default_timezone = default_timezone or get_settings().policy_default_timezone

    @property
    def cache(self) -> "PolicyCache":
        return self._cache

    async def evaluate(
        self,
        org_id: str,
        request: AccessRequest,
        *,
        now: datetime | None = None,
    ) -> PolicyEvaluationResult:
        # Store errors propagate as-is; anything else must never fall through to a decision.
        try:
            policies = await self._cache.get(org_id)
            result = evaluate_policy_set(
                policies,
                request,
                now=now,
                default_timezone=self._default_timezone,
            )
        except TrustplaneError:
            raise
        except Exception as exc:  # noqa: BLE001 - unknown failures must not resolve to ALLOW
            increment_counter("policy_evaluation_errors_total")
            logger.error("policy_evaluation_failed org_id=%s", org_id, exc_info=exc)
            raise InternalError("Policy evaluation failed") from exc
        increment_counter(f"policy_decisions_total.{result.decision.lower()}")
        logger.debug(
            "policy_evaluated org_id=%s decision=%s matched=%s",
            org_id,
            result.decision,
            ",".join(result.matched_policy_ids) or "-",
        )
        return result
