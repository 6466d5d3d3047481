from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from staffauth.logging import get_logger
from staffauth.storage.errors import ConstraintViolation
from staffauth.storage.models import (
    EventFilter,
    FailureUpdate,
    Identity,
    LoginHistoryFilter,
    LoginHistoryRecord,
    Origin,
    RefreshTokenRecord,
    Role,
    SecurityEvent,
    SecurityEventKind,
    Severity,
    Tenant,
    TwoFactorConfig,
    new_id,
)

_UPDATABLE_IDENTITY_FIELDS = frozenset(
    {
        "email",
        "name",
        "role",
        "is_active",
        "failed_attempts",
        "locked_until",
        "two_factor_enabled",
        "last_login_at",
    }
)


class MemoryStore:
    """In-process credential store used for tests and single-node development.

    Every read returns a copy and every mutation runs under one re-entrant
    lock, so the check-and-update helpers behave like the single-row
    conditional updates of the Postgres store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.identities: Dict[str, Identity] = {}
        self.password_history: Dict[str, List[str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.security_events: List[SecurityEvent] = []
        self.login_history: List[LoginHistoryRecord] = []
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self._data_lock = threading.RLock()

    # tenants
    def create_tenant(
        self, name: str, *, tenant_id: Optional[str] = None, is_active: bool = True
    ) -> Tenant:
        with self._data_lock:
            tenant = Tenant(id=tenant_id or new_id(), name=name, is_active=is_active)
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            self.tenants[tenant.id] = tenant
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.is_active = is_active
            return replace(tenant)

    # identities
    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        tenant_id: str,
        role: Role = Role.STAFF,
        name: Optional[str] = None,
        is_active: bool = True,
    ) -> Identity:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=new_id(),
                tenant_id=tenant_id,
                email=normalized,
                password_hash=password_hash,
                role=Role(role),
                name=name,
                is_active=is_active,
            )
            self.identities[identity.id] = identity
            return replace(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = email.strip().lower()
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.email == normalized), None
            )
            return replace(identity) if identity else None

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        unknown = set(fields) - _UPDATABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"cannot update identity fields: {sorted(unknown)}")
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            for name, value in fields.items():
                setattr(identity, name, value)
            return replace(identity)

    def record_login_failure(
        self,
        identity_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[FailureUpdate]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            if identity.locked_until and identity.locked_until > now:
                return FailureUpdate(
                    attempts=identity.failed_attempts,
                    locked_until=identity.locked_until,
                    newly_locked=False,
                    already_locked=True,
                )
            # An elapsed lock starts a fresh run of attempts
            if identity.locked_until is not None:
                identity.failed_attempts = 0
                identity.locked_until = None
            identity.failed_attempts += 1
            newly_locked = identity.failed_attempts >= threshold
            if newly_locked:
                identity.locked_until = lock_until
            return FailureUpdate(
                attempts=identity.failed_attempts,
                locked_until=identity.locked_until,
                newly_locked=newly_locked,
            )

    def record_login_success(self, identity_id: str, now: datetime) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.failed_attempts = 0
            identity.locked_until = None
            identity.last_login_at = now
            return replace(identity)

    def clear_lockout(self, identity_id: str) -> bool:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return False
            identity.failed_attempts = 0
            identity.locked_until = None
            return True

    def count_locked_identities(self, tenant_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for i in self.identities.values()
                if i.tenant_id == tenant_id and i.locked_until and i.locked_until > now
            )

    # passwords
    def set_password_hash(
        self, identity_id: str, password_hash: str, *, history_depth: int = 0
    ) -> bool:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return False
            if history_depth > 0:
                history = self.password_history.setdefault(identity_id, [])
                history.insert(0, identity.password_hash)
                del history[history_depth:]
            identity.password_hash = password_hash
            return True

    def get_password_history(self, identity_id: str, limit: int) -> List[str]:
        with self._data_lock:
            return list(self.password_history.get(identity_id, [])[:limit])

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if any(t.token_hash == record.token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            self.refresh_tokens[record.id] = replace(record)
            return replace(record)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return replace(record) if record else None

    def revoke_refresh_token(self, token_id: str) -> bool:
        """Flip a token to revoked; returns True only for the call that flipped it."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked:
                return False
            record.revoked = True
            return True

    def revoke_identity_refresh_tokens(self, identity_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.identity_id == identity_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            return revoked

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                token_id
                for token_id, record in self.refresh_tokens.items()
                if record.revoked or record.expires_at <= now
            ]
            for token_id in doomed:
                del self.refresh_tokens[token_id]
            return len(doomed)

    def list_active_refresh_tokens(
        self, tenant_id: str, now: datetime, *, identity_id: Optional[str] = None
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            results = []
            for record in self.refresh_tokens.values():
                if record.revoked or record.expires_at <= now:
                    continue
                owner = self.identities.get(record.identity_id)
                if not owner or owner.tenant_id != tenant_id:
                    continue
                if identity_id and record.identity_id != identity_id:
                    continue
                results.append(replace(record))
            return sorted(results, key=lambda r: r.created_at, reverse=True)

    # security events (append-only)
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.security_events.append(replace(event, metadata=dict(event.metadata)))
            return event

    def list_security_events(
        self, criteria: EventFilter, *, offset: int, limit: int
    ) -> Tuple[List[SecurityEvent], int]:
        with self._data_lock:
            matches = [e for e in self.security_events if _event_matches(e, criteria)]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return [replace(e) for e in matches[offset : offset + limit]], len(matches)

    def security_event_breakdown(
        self, tenant_id: str, since: datetime
    ) -> List[Tuple[SecurityEventKind, Severity, int]]:
        counts: Dict[Tuple[SecurityEventKind, Severity], int] = {}
        with self._data_lock:
            for event in self.security_events:
                if event.tenant_id != tenant_id or event.created_at < since:
                    continue
                key = (event.kind, event.severity)
                counts[key] = counts.get(key, 0) + 1
        return [(kind, severity, count) for (kind, severity), count in counts.items()]

    # login history (append-only)
    def append_login_history(self, record: LoginHistoryRecord) -> LoginHistoryRecord:
        with self._data_lock:
            self.login_history.append(replace(record))
            return record

    def list_login_history(
        self, criteria: LoginHistoryFilter, *, offset: int, limit: int
    ) -> Tuple[List[LoginHistoryRecord], int]:
        with self._data_lock:
            matches = [r for r in self.login_history if _history_matches(r, criteria)]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [replace(r) for r in matches[offset : offset + limit]], len(matches)

    def list_successful_origins(self, identity_id: str, since: datetime) -> List[Origin]:
        with self._data_lock:
            return [
                Origin(ip_address=r.ip_address, user_agent=r.user_agent)
                for r in self.login_history
                if r.identity_id == identity_id and r.success and r.created_at >= since
            ]

    def count_login_attempts(self, tenant_id: str, since: datetime) -> Tuple[int, int]:
        """Return ``(total, failed)`` login attempts for a tenant since ``since``."""
        with self._data_lock:
            rows = [
                r
                for r in self.login_history
                if r.tenant_id == tenant_id and r.created_at >= since
            ]
        return len(rows), sum(1 for r in rows if not r.success)

    # two-factor
    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        with self._data_lock:
            self.two_factor[config.identity_id] = replace(
                config, backup_code_hashes=list(config.backup_code_hashes)
            )
            identity = self.identities.get(config.identity_id)
            if identity:
                identity.two_factor_enabled = config.enabled
            return config

    def get_two_factor(self, identity_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            config = self.two_factor.get(identity_id)
            if not config:
                return None
            return replace(config, backup_code_hashes=list(config.backup_code_hashes))

    def delete_two_factor(self, identity_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(identity_id, None) is not None
            identity = self.identities.get(identity_id)
            if identity:
                identity.two_factor_enabled = False
            return removed

    def consume_backup_code(self, identity_id: str, code_hash: str) -> bool:
        with self._data_lock:
            config = self.two_factor.get(identity_id)
            if not config or code_hash not in config.backup_code_hashes:
                return False
            config.backup_code_hashes.remove(code_hash)
            return True


def _event_matches(event: SecurityEvent, criteria: EventFilter) -> bool:
    if event.tenant_id != criteria.tenant_id:
        return False
    if criteria.identity_id and event.identity_id != criteria.identity_id:
        return False
    if criteria.kind and event.kind != criteria.kind:
        return False
    if criteria.severity and event.severity != criteria.severity:
        return False
    if criteria.since and event.created_at < criteria.since:
        return False
    if criteria.until and event.created_at > criteria.until:
        return False
    return True


def _history_matches(record: LoginHistoryRecord, criteria: LoginHistoryFilter) -> bool:
    if record.tenant_id != criteria.tenant_id:
        return False
    if criteria.identity_id and record.identity_id != criteria.identity_id:
        return False
    if criteria.success is not None and record.success != criteria.success:
        return False
    if criteria.since and record.created_at < criteria.since:
        return False
    if criteria.until and record.created_at > criteria.until:
        return False
    return True
