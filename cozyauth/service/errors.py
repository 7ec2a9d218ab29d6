from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP status_code and a stable error_code. The
    message is what the JSON body reports under "error", so it must be safe
    to show to an end user.
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


class InvalidEmail(ValidationError):
    def __init__(self, message: str = "Invalid email format", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredToken(ServiceError):
    """Magic-link token unknown, expired or already used.

    Reported as 400 rather than 401: the caller holds no session yet, it
    submitted a bad one-time credential.
    """

    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredSessionKey(ServiceError):
    status_code = 400
    error_code = "invalid_session_key"

    def __init__(self, message: str = "Invalid or expired session key", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFound(NotFoundError):
    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NotConfiguredError(ServerError):
    """A secret or credential the flow needs is missing.

    Kept distinct from ServerError so operators can tell misconfiguration
    apart from an outage.
    """

    error_code = "not_configured"


class UpstreamError(ServerError):
    """GitHub or the email provider answered with a failure."""

    error_code = "upstream_error"


class EmailDeliveryError(UpstreamError):
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidEmail",
    "InvalidOrExpiredToken",
    "InvalidOrExpiredSessionKey",
    "NotFoundError",
    "UserNotFound",
    "RateLimitedError",
    "ServerError",
    "NotConfiguredError",
    "UpstreamError",
    "EmailDeliveryError",
]
