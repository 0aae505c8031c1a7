from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code returned in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Bad credentials and every kind of token rejection share this type and
    message so callers cannot tell which check failed.
    """
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ChallengeNotFoundError(NotFoundError):
    """No OTP challenge exists for the handle."""

    def __init__(self, message: str = "Invalid or expired challenge", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeAlreadyUsedError(BadRequestError):
    """The challenge was already redeemed."""

    def __init__(self, message: str = "Code already used", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeExpiredError(BadRequestError):
    """The challenge is past its expiry."""

    def __init__(self, message: str = "Code expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AttemptsExceededError(BadRequestError):
    """The challenge ran out of verification attempts."""

    def __init__(self, message: str = "Maximum attempts exceeded", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(BadRequestError):
    """The submitted code does not match."""

    def __init__(self, message: str = "Invalid code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PurposeMismatchError(BadRequestError):
    """The challenge was issued for a different flow."""

    def __init__(self, message: str = "Invalid challenge", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ChallengeNotFoundError",
    "ChallengeAlreadyUsedError",
    "ChallengeExpiredError",
    "AttemptsExceededError",
    "InvalidCodeError",
    "PurposeMismatchError",
]
