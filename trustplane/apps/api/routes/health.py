from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from trustplane.apps.api.deps import OperatorPrincipal, require_role
from trustplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from trustplane.apps.api.response import SuccessEnvelope, success_response
from trustplane.persistence.db import pool_stats
from trustplane.services.telemetry import availability, counters_snapshot, p95_latency

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    db_pool: dict[str, int | None]
    availability_5m: float | None
    p95_latency_ms_5m: float | None
    evaluate_p95_latency_ms_5m: float | None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Public liveness probe; never touches the store.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)


@router.get("/ops/metrics", response_model=SuccessEnvelope[MetricsResponse] | MetricsResponse)
async def ops_metrics(
    request: Request,
    _principal: OperatorPrincipal = Depends(require_role("SUPER_ADMIN")),
) -> dict:
    # Expose in-process counters and pool gauges for operators.
    payload = MetricsResponse(
        counters=counters_snapshot(),
        db_pool=pool_stats(),
        availability_5m=availability(300),
        p95_latency_ms_5m=p95_latency(300),
        evaluate_p95_latency_ms_5m=p95_latency(300, route_class="evaluate"),
    )
    return success_response(request=request, data=payload)
