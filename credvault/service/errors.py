from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Outcome a route reports to the client through the error envelope.

    ``status_code`` is the HTTP status and ``error_code`` the stable
    machine-readable code. ``detail`` is rendered as ``error.details``.
    Framework-level 404/405 responses do not pass through here.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ServiceError):
    """Input rejected: malformed value or an invalid/expired token."""


class BadRequestError(ServiceError):
    """Well-formed request the service declined, e.g. a duplicate registration."""

    error_code = "bad_request"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Throttle or send ceiling hit; ``detail`` may carry ``retry_after``."""

    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
