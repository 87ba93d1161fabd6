from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Surface missing org predicates before a query can scan across tenants.
    message: str


def require_org_id(org_id: str | None) -> str:
    # Org ids are bare strings shared by three stores; never accept an empty one.
    if not org_id or not str(org_id).strip():
        raise TenantPredicateError("Tenant predicate required but org_id is missing")
    return org_id


def org_predicate(model, org_id: str) -> object:
    # Build org predicates through a single helper to guarantee guard coverage.
    require_org_id(org_id)
    return model.org_id == org_id
