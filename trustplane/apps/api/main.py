from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from trustplane.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    trustplane_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from trustplane.apps.api.response import API_VERSION
from trustplane.apps.api.routes.audit import router as audit_router
from trustplane.apps.api.routes.gateway import router as gateway_router
from trustplane.apps.api.routes.gateways import router as gateways_router
from trustplane.apps.api.routes.health import router as health_router
from trustplane.apps.api.routes.organizations import router as organizations_router
from trustplane.apps.api.routes.policies import router as policies_router
from trustplane.apps.api.routes.sessions import router as sessions_router
from trustplane.core.errors import TrustplaneError
from trustplane.core.logging import configure_logging
from trustplane.persistence.guards import TenantPredicateError
from trustplane.services.auth.gateway_keys import GatewayIdentityResolver
from trustplane.services.policy.cache import PolicyCache
from trustplane.services.policy.engine import PolicyDecisionEngine
from trustplane.services.policy.store import PolicyStore, load_policy_snapshots
from trustplane.services.recorder import DecisionRecorder
from trustplane.services.resilience import close_cache_redis, get_cache_redis
from trustplane.services.telemetry import record_request


def route_class_for_path(path: str) -> str:
    # Bucket request latency by the hot paths operators care about.
    if path.endswith("/evaluate"):
        return "evaluate"
    if path.endswith("/telemetry") or path.endswith("/record-decision"):
        return "record"
    if path.startswith(f"/{API_VERSION}/gateway"):
        return "gateway"
    return "operator"


def _wire_services(app: FastAPI, *, policy_cache: PolicyCache | None) -> None:
    # One cache instance per app; the engine and store share it.
    cache = policy_cache or PolicyCache(load_policy_snapshots, redis_factory=get_cache_redis)
    app.state.policy_cache = cache
    app.state.decision_engine = PolicyDecisionEngine(cache)
    app.state.policy_store = PolicyStore(cache)
    app.state.recorder = DecisionRecorder()
    app.state.gateway_resolver = GatewayIdentityResolver()


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await close_cache_redis()


def create_app(*, policy_cache: PolicyCache | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Trustplane API", lifespan=_lifespan)
    _wire_services(app, policy_cache=policy_cache)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            path=request.url.path,
            route_class=route_class_for_path(request.url.path),
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(TrustplaneError)
    async def _trustplane_exception_handler(request: Request, exc: TrustplaneError):
        return await trustplane_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Gateway boundary authenticated by X-API-Key.
    app.include_router(gateway_router, prefix=f"/{API_VERSION}")
    # Operator surface authenticated by bearer JWT.
    app.include_router(organizations_router, prefix=f"/{API_VERSION}")
    app.include_router(policies_router, prefix=f"/{API_VERSION}")
    app.include_router(gateways_router, prefix=f"/{API_VERSION}")
    app.include_router(sessions_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Trustplane API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document both credential kinds: bearer JWT for operators, API key for gateways.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="Trustplane API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
        security_schemes["GatewayApiKey"] = {"type": "apiKey", "in": "header", "name": "X-API-Key"}
        for path, operations in schema.get("paths", {}).items():
            if path == "/v1/health":
                continue
            scheme = "GatewayApiKey" if path.startswith("/v1/gateway/") else "BearerAuth"
            for operation in operations.values():
                operation.setdefault("security", [{scheme: []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
