from __future__ import annotations

from datetime import datetime
from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can switch on:
    - unauthorized (401)
    - two_factor_required (401)
    - token_invalid (401)
    - token_revoked (401)
    - forbidden (403)
    - account_inactive (403)
    - tenant_inactive (403)
    - not_found (404)
    - account_locked (423)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorRequiredError(AuthenticationError):
    """Password accepted but a second factor is needed (401)."""
    error_code = "two_factor_required"

    def __init__(self, message: str = "two-factor code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Access token malformed, expired, revoked or signed with another key."""
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedOrUnknownError(AuthenticationError):
    """Refresh token unknown, revoked, expired or bound to an inactive identity."""
    error_code = "token_revoked"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed attempts; the identity is temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "account temporarily locked",
        *,
        locked_until: Optional[datetime] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.locked_until = locked_until


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"

    def __init__(self, message: str = "account is inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TenantInactiveError(ForbiddenError):
    error_code = "tenant_inactive"

    def __init__(self, message: str = "tenant is inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PermissionDeniedError(ForbiddenError):
    """Cross-tenant or insufficient-role action attempt (403)."""

    def __init__(self, message: str = "permission denied", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class PasswordPolicyViolation(ValidationError):
    """New password rejected; ``violations`` lists every rule it broke."""

    def __init__(
        self,
        violations: List[dict],
        message: str = "password does not meet policy",
        *,
        strength: Optional[str] = None,
    ) -> None:
        detail: dict = {"violations": violations}
        if strength:
            detail["strength"] = strength
        super().__init__(message, detail=detail)
        self.violations = violations
        self.strength = strength


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TwoFactorRequiredError",
    "TokenInvalidError",
    "TokenRevokedOrUnknownError",
    "AccountLockedError",
    "ForbiddenError",
    "AccountInactiveError",
    "TenantInactiveError",
    "PermissionDeniedError",
    "NotFoundError",
    "PasswordPolicyViolation",
]
