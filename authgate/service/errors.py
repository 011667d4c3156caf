from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on:
    - invalid_credentials (401)
    - invalid_token (401)
    - unauthorized (401)
    - account_locked (403)
    - forbidden (403)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password, or wrong second factor (401).

    The three causes share one message so callers cannot enumerate accounts.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Malformed, expired, revoked or unknown token or MFA correlator (401)."""
    error_code = "invalid_token"

    def __init__(
        self, message: str = "invalid token", *, reason: Optional[str] = None, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        # Internal classification for logs; never rendered to clients
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Account is locked after too many failed password checks (403)."""
    error_code = "account_locked"

    def __init__(self, message: str = "account is locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyExistsError(ConflictError):
    """An account with this email already exists (409)."""
    pass


class MfaAlreadyEnabledError(ConflictError):
    """MFA enrollment attempted while MFA is already active (409)."""

    def __init__(self, message: str = "MFA is already enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        *,
        retry_after: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500), e.g. stored data that cannot be interpreted."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ForbiddenError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "MfaAlreadyEnabledError",
    "RateLimitedError",
    "ServerError",
]
