from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from staffauth.service.passwords import PASSWORD_MAX_LENGTH

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "two_factor_required",
    "token_invalid",
    "token_revoked",
    "forbidden",
    "account_inactive",
    "tenant_inactive",
    "not_found",
    "account_locked",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can switch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# requests
class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    totp_code: Optional[str] = Field(default=None, max_length=10)
    backup_code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    # Length bounds beyond this are reported by the password policy
    new_password: str = Field(..., max_length=1024)


class TwoFactorEnableRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    code: str = Field(..., min_length=6, max_length=16)


class BackupCodesRequest(BaseModel):
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)


class UnlockRequest(BaseModel):
    identity_id: str = Field(..., min_length=1, max_length=128)


# responses
class IdentityResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    role: str
    name: Optional[str] = None
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None


class LoginResponse(BaseModel):
    identity: IdentityResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    suspicious: bool = False


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class SecurityEventResponse(BaseModel):
    id: str
    tenant_id: str
    identity_id: Optional[str] = None
    kind: str
    severity: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class LoginHistoryResponse(BaseModel):
    id: str
    identity_id: Optional[str] = None
    email: str
    success: bool
    fail_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class SessionResponse(BaseModel):
    id: str
    identity_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class SecurityEventList(BaseModel):
    items: List[SecurityEventResponse]
    pagination: Pagination


class LoginHistoryList(BaseModel):
    items: List[LoginHistoryResponse]
    pagination: Pagination


class SessionList(BaseModel):
    items: List[SessionResponse]
