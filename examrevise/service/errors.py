from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)

    ``extra`` holds endpoint-specific top-level fields merged into the error
    envelope (for example ``requiresAuth`` on validation failures).
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
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.extra = extra or {}


class ValidationError(ServiceError):
    """Malformed or missing input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthError(ServiceError):
    """Bad credentials or an unusable token (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenInvalidError(AuthError):
    """Token is malformed, tampered with, or signed for someone else (401)."""


class TokenExpiredError(AuthError):
    """Token is correctly signed but past its expiry (401)."""


class ForbiddenError(ServiceError):
    """Account is blocked (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource or route not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Active sessions on other devices need explicit confirmation (409)."""
    status_code = 409
    error_code = "conflict"


class InternalError(ServiceError):
    """Store or signing failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthError",
    "TokenInvalidError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InternalError",
]
