from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Every error carries a stable ``error_code`` naming its abstract kind so
    the transport layer in front of this package can map it however it
    likes:
    - not_found
    - conflict
    - unauthorized
    - forbidden
    - validation_error
    - server_error
    """

    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input was rejected before any state changed."""
    error_code = "validation_error"


class BadRequestError(ValidationError):
    pass


class WeakPasswordError(ValidationError):
    """Password does not satisfy the configured strength policy."""


class MfaRequiredError(BadRequestError):
    """An MFA code is mandatory for this flow and none was supplied."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing."""
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    pass


class AccountLockedError(AuthenticationError):
    pass


class AccountInactiveError(AuthenticationError):
    pass


class TokenInvalidOrExpiredError(AuthenticationError):
    """Single generic signal for every token check that fails."""


class MfaInvalidError(AuthenticationError):
    pass


class SessionInvalidError(AuthenticationError):
    pass


class ForbiddenError(ServiceError):
    error_code = "forbidden"


class TenantAccessDeniedError(ForbiddenError):
    pass


class NotFoundError(ServiceError):
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation."""
    error_code = "conflict"


class EmailInUseError(ConflictError):
    pass


class PasswordReusedError(ConflictError):
    pass


class ConfigurationError(ServiceError):
    """Configuration integrity failure; fatal at startup."""
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "WeakPasswordError",
    "MfaRequiredError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "TokenInvalidOrExpiredError",
    "MfaInvalidError",
    "SessionInvalidError",
    "ForbiddenError",
    "TenantAccessDeniedError",
    "NotFoundError",
    "ConflictError",
    "EmailInUseError",
    "PasswordReusedError",
    "ConfigurationError",
]
