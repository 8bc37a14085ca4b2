from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` and the HTTP-style
    ``status_code`` a transport layer should map it to:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error / lockout_prevented (400)
    - conflict (409)
    - directory_unavailable (503)
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


class LockoutPreventedError(ValidationError):
    """Change would leave no active administrator able to reach a protected section."""
    error_code = "lockout_prevented"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Uniform login failure; never says which factor failed."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactiveError(InvalidCredentialsError):
    """Deactivated account. Surfaces to callers exactly like bad credentials."""
    pass


class TokenInvalidError(AuthenticationError):
    """Token signature, claims, expiry or version check failed (401)."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


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


class DirectoryError(ServiceError):
    """Directory infrastructure failure.

    Always classified ``unavailable``: the only failure kind that allows the
    strategy resolver to move on to another authentication method.
    """
    status_code = 503
    error_code = "directory_unavailable"
    classification = "unavailable"


class DirectoryConfigurationError(DirectoryError):
    """Directory enabled but required settings are missing."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Connect, service bind, timeout, or open circuit breaker."""
    pass


class GroupLookupDegraded(Exception):
    """Group search failed; authentication continues with no groups."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "LockoutPreventedError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "TokenInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DirectoryError",
    "DirectoryConfigurationError",
    "DirectoryConnectionError",
    "GroupLookupDegraded",
]
