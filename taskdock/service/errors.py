from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - service_unavailable (503)
    - server_error (500)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Subclasses name the rejection reason; it is reported to the client in
    ``detail["reason"]``.
    """

    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("reason", type(self).__name__)
        super().__init__(message or self.default_message, detail=detail, **kwargs)


class MissingToken(AuthenticationError):
    default_message = "access token missing"


class TokenInvalid(AuthenticationError):
    default_message = "access token invalid"


class TokenExpired(AuthenticationError):
    default_message = "access token expired"


class MissingCredentials(AuthenticationError):
    default_message = "refresh token and user id are required"


class UserNotFound(AuthenticationError):
    default_message = (
        "User not found. Make sure that the refresh token and user id are correct"
    )


class SessionInvalidOrExpired(AuthenticationError):
    default_message = "Refresh token has expired or the session is invalid"


class InvalidCredentials(AuthenticationError):
    default_message = "invalid credentials"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class VerificationRequired(ServiceError):
    """Client address must pass a human-verification challenge (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "verification required", **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("challenge", "human_verification")
        super().__init__(message, detail=detail, **kwargs)


class StoreUnavailable(ServiceError):
    """Backing store could not be reached or failed mid-operation (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingToken",
    "TokenInvalid",
    "TokenExpired",
    "MissingCredentials",
    "UserNotFound",
    "SessionInvalidOrExpired",
    "InvalidCredentials",
    "NotFoundError",
    "ConflictError",
    "VerificationRequired",
    "StoreUnavailable",
    "ServerError",
]
