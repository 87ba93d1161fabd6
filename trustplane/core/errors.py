from __future__ import annotations

from typing import Any


class TrustplaneError(Exception):
    """Base error for Trustplane."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(TrustplaneError):
    """Organization, policy, gateway or session is absent."""

    code = "NOT_FOUND"
    status_code = 404


class UnauthorizedError(TrustplaneError):
    """Missing or invalid tenant credential."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class ForbiddenError(TrustplaneError):
    """Authenticated caller acting outside its tenant or role."""

    code = "AUTH_FORBIDDEN"
    status_code = 403


class ValidationFailedError(TrustplaneError):
    """Malformed request attributes or an invalid state transition."""

    code = "VALIDATION_ERROR"
    status_code = 422


class ConflictError(TrustplaneError):
    """Unique key already taken."""

    code = "CONFLICT"
    status_code = 409


class StoreUnavailableError(TrustplaneError):
    """Transient failure or timeout in the policy store or decision log."""

    code = "STORE_UNAVAILABLE"
    status_code = 503


class InternalError(TrustplaneError):
    """Unexpected failure; the engine could not determine a decision."""

    code = "INTERNAL_ERROR"
    status_code = 500
