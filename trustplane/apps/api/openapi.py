from __future__ import annotations

from typing import Any

from trustplane.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid credentials"),
    403: _error_response("Forbidden", code="AUTH_FORBIDDEN", message="Organization is outside the caller's scope"),
    404: _error_response("Not found", code="NOT_FOUND", message="Session not found"),
    409: _error_response(
        "Conflict",
        code="CONFLICT",
        message="Idempotency-Key already used with a different payload",
    ),
    422: _error_response("Validation error", code="VALIDATION_ERROR", message="Session has ended"),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _error_response("Store unavailable", code="STORE_UNAVAILABLE", message="Policy store unavailable"),
}
