from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - invariant_violation (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        reason: Optional[str] = None,
        detail: Optional[dict] = None,
        **kwargs,
    ) -> None:
        merged = dict(detail or {})
        if field is not None:
            merged.setdefault("field", field)
        if reason is not None:
            merged.setdefault("reason", reason)
        super().__init__(message, detail=merged, **kwargs)


class UnauthorizedError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class InvariantViolation(ServiceError):
    """Operation would break an account invariant, e.g. leave no identity (409)."""
    status_code = 409
    error_code = "invariant_violation"


class TooManyRequestsError(ServiceError):
    """Attempt limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
        **kwargs,
    ) -> None:
        merged = dict(detail or {})
        if retry_after is not None:
            merged.setdefault("retry_after_seconds", retry_after)
        super().__init__(message, detail=merged, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ExternalServiceError(ServiceError):
    """Upstream credential authority or provider unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedError",
    "NotFoundError",
    "ConflictError",
    "InvariantViolation",
    "TooManyRequestsError",
    "ServerError",
    "ExternalServiceError",
]
