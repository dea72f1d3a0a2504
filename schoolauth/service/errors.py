from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Domain failure raised by the auth flow and rendered by the API layer.

    Subclasses pin an HTTP status and one of the stable envelope codes:
    - unauthorized (401)
    - invalid_token (401)
    - forbidden (403)
    - email_not_verified (403)
    - invalid_tenant (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - validation_error (400)
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
    """Malformed or out-of-range input (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidRole(ValidationError):
    """Role string outside the closed set of roles (400)."""


class AuthenticationError(ServiceError):
    """Caller could not be authenticated (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown identity or wrong password; the two are never distinguished."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredToken(AuthenticationError):
    """Bearer, refresh, reset or verification token rejected (401)."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Token validation raises the same type; the alias reads better at call sites
# that only deal with signed tokens.
InvalidToken = InvalidOrExpiredToken


class AccountLocked(AuthenticationError):
    """Account is inside its lockout window (423)."""
    status_code = 423
    error_code = "account_locked"


class ForbiddenError(ServiceError):
    """Authenticated or identified, but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerified(ForbiddenError):
    """Login attempted before the email address was confirmed (403)."""
    error_code = "email_not_verified"

    def __init__(
        self,
        message: str = "email not verified; check your inbox for the verification link",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountDisabled(ForbiddenError):
    """Identity has been disabled by an administrator (403)."""


class TenantNotFound(ForbiddenError):
    """Tenant is unknown or inactive (403)."""
    error_code = "invalid_tenant"


class TenantMismatch(ForbiddenError):
    """Bearer token belongs to a different tenant than the request names (403)."""
    error_code = "invalid_tenant"

    def __init__(
        self, message: str = "token was not issued for this tenant", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """No such identity or record in the tenant (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Username or email already taken in the tenant (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Failure on our side, never the caller's (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """A deployment or programming defect, e.g. tenant context missing (500)."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidRole",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidOrExpiredToken",
    "InvalidToken",
    "AccountLocked",
    "ForbiddenError",
    "EmailNotVerified",
    "AccountDisabled",
    "TenantNotFound",
    "TenantMismatch",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
]
