from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Tenant value persisted for login history rows whose tenant could not be resolved
UNRESOLVED_TENANT = "unknown"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"


# Roles allowed to administer other identities in their tenant
ADMIN_ROLES = frozenset({Role.ADMIN, Role.MANAGER})


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class SecurityEventKind(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    PASSWORD_CHANGED = "password_changed"
    SUSPICIOUS_LOGIN = "suspicious_login"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    TWO_FA_ENABLED = "two_fa_enabled"
    TWO_FA_DISABLED = "two_fa_disabled"
    TWO_FA_BACKUP_USED = "two_fa_backup_used"
    INVALID_2FA_ATTEMPT = "invalid_2fa_attempt"
    SESSION_TERMINATED = "session_terminated"
    PERMISSION_DENIED = "permission_denied"


@dataclass
class Tenant:
    id: str
    name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Identity:
    id: str
    tenant_id: str
    email: str
    password_hash: str
    role: Role = Role.STAFF
    name: Optional[str] = None
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())


@dataclass(frozen=True)
class IdentitySnapshot:
    """Claims needed to mint an access token without re-reading the store."""

    id: str
    tenant_id: str
    role: Role
    email: str

    @classmethod
    def of(cls, identity: Identity) -> "IdentitySnapshot":
        return cls(
            id=identity.id,
            tenant_id=identity.tenant_id,
            role=identity.role,
            email=identity.email,
        )


@dataclass(frozen=True)
class Origin:
    """Network address and client signature of a request."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    id: str
    identity_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class SecurityEvent:
    id: str
    tenant_id: str
    kind: SecurityEventKind
    severity: Severity
    description: str
    identity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginHistoryRecord:
    id: str
    tenant_id: str
    email: str
    success: bool
    identity_id: Optional[str] = None
    fail_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TwoFactorConfig:
    identity_id: str
    secret: str
    backup_code_hashes: List[str] = field(default_factory=list)
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class FailureUpdate:
    """Result of an atomic failed-attempt increment."""

    attempts: int
    locked_until: Optional[datetime]
    newly_locked: bool
    already_locked: bool = False


@dataclass(frozen=True)
class Resolved:
    tenant_id: str


@dataclass(frozen=True)
class Unresolved:
    reason: str = "identity_not_found"


TenantResolution = Union[Resolved, Unresolved]


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    def pagination(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }


@dataclass(frozen=True)
class EventFilter:
    tenant_id: str
    identity_id: Optional[str] = None
    kind: Optional[SecurityEventKind] = None
    severity: Optional[Severity] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


@dataclass(frozen=True)
class LoginHistoryFilter:
    tenant_id: str
    identity_id: Optional[str] = None
    success: Optional[bool] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
