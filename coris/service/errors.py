from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``message`` is what the client sees; ``detail`` only goes to the logs.
    """

    status_code: int = 400
    default_message: str = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}


class InvalidTokenError(ServiceError):
    """Password reset token unknown, expired or already used (400).

    The three cases share one message so callers cannot tell them apart.
    """
    status_code = 400
    default_message = "Invalid or expired token"


class AuthenticationError(ServiceError):
    """Session missing, malformed, expired or revoked (401)."""
    status_code = 401
    default_message = "Unauthorized"


class InvalidCredentialsError(AuthenticationError):
    default_message = "Invalid credentials"


class ForbiddenError(ServiceError):
    status_code = 403
    default_message = "Forbidden"


class CsrfError(ForbiddenError):
    """Double-submit CSRF check failed (403)."""
    default_message = "CSRF token missing or invalid"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ServiceError):
    status_code = 409
    default_message = "Conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    default_message = "Too many requests"

__all__ = [
    "ServiceError",
    "InvalidTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "CsrfError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
