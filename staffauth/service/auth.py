from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from staffauth.config import Settings
from staffauth.logging import get_logger
from staffauth.service.anomaly import SuspiciousLoginDetector
from staffauth.service.audit import DEFAULT_PAGE_SIZE, SecurityAuditLog
from staffauth.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordPolicyViolation,
    PermissionDeniedError,
    TenantInactiveError,
    TokenInvalidError,
    TokenRevokedOrUnknownError,
    TwoFactorRequiredError,
    ValidationError,
)
from staffauth.service.lockout import LockoutPolicy
from staffauth.service.passwords import PasswordHasher, PasswordPolicy
from staffauth.service.tokens import AccessClaims, AccessTokenDenylist, TokenService
from staffauth.service.two_factor import TwoFactorService, TwoFactorSetup
from staffauth.storage.models import (
    ADMIN_ROLES,
    Identity,
    LoginHistoryRecord,
    Origin,
    Page,
    RefreshTokenRecord,
    Role,
    SecurityEvent,
    SecurityEventKind,
    Severity,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdentitySummary:
    id: str
    tenant_id: str
    email: str
    role: Role
    name: Optional[str] = None
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None

    @classmethod
    def of(cls, identity: Identity) -> "IdentitySummary":
        return cls(
            id=identity.id,
            tenant_id=identity.tenant_id,
            email=identity.email,
            role=identity.role,
            name=identity.name,
            two_factor_enabled=identity.two_factor_enabled,
            last_login_at=identity.last_login_at,
        )


@dataclass(frozen=True)
class LoginResult:
    identity: IdentitySummary
    access_token: str
    refresh_token: str
    expires_in: int
    suspicious: bool = False
    token_type: str = "Bearer"


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"


class AuthService:
    """Login, token lifecycle, password changes and account administration.

    Composes the hasher, token service, lockout policy, anomaly detector,
    audit log and second-factor service. Security-relevant failures are
    audited before the error is raised.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        tokens: TokenService,
        denylist: AccessTokenDenylist,
        audit: SecurityAuditLog,
        lockout: LockoutPolicy,
        detector: SuspiciousLoginDetector,
        two_factor: TwoFactorService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.policy = policy
        self.tokens = tokens
        self.denylist = denylist
        self.audit = audit
        self.lockout = lockout
        self.detector = detector
        self.two_factor = two_factor
        self._clock = clock

    # provisioning
    async def provision_identity(
        self,
        tenant_id: str,
        email: str,
        password: str,
        *,
        role: Role = Role.STAFF,
        name: Optional[str] = None,
    ) -> Identity:
        if not self.store.get_tenant(tenant_id):
            raise NotFoundError("tenant not found")
        self.policy.enforce(password, email=email)
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        identity = self.store.create_identity(
            email, password_hash, tenant_id=tenant_id, role=role, name=name
        )
        logger.info(
            "identity_provisioned",
            identity_id=identity.id,
            tenant_id=tenant_id,
            role=identity.role.value,
        )
        return identity

    def identity_summary(self, identity_id: str) -> IdentitySummary:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("identity not found")
        return IdentitySummary.of(identity)

    # login
    async def login(
        self,
        email: str,
        password: str,
        origin: Optional[Origin] = None,
        *,
        totp_code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> LoginResult:
        origin = origin or Origin()
        email = (email or "").strip().lower()
        identity = self.store.get_identity_by_email(email) if email else None
        if not identity:
            await asyncio.to_thread(self.hasher.burn, password or "")
            self.audit.record_login_attempt(
                email, False, fail_reason="unknown_identity", origin=origin
            )
            logger.info("login_failed", reason="unknown_identity")
            raise InvalidCredentialsError()

        if not identity.is_active:
            self.audit.record_login_attempt(
                email, False, identity=identity, fail_reason="account_inactive", origin=origin
            )
            raise AccountInactiveError()
        tenant = self.store.get_tenant(identity.tenant_id)
        if not tenant or not tenant.is_active:
            self.audit.record_login_attempt(
                email, False, identity=identity, fail_reason="tenant_inactive", origin=origin
            )
            raise TenantInactiveError()

        # A locked identity is rejected before the hash is consulted
        if identity.is_locked(self._clock()):
            self.audit.record_login_attempt(
                email, False, identity=identity, fail_reason="account_locked", origin=origin
            )
            logger.info("login_rejected_locked", identity_id=identity.id)
            raise AccountLockedError(locked_until=identity.locked_until)

        password_ok = await asyncio.to_thread(
            self.hasher.verify, password or "", identity.password_hash
        )
        fail_reason: Optional[str] = None if password_ok else "invalid_password"

        if password_ok and identity.two_factor_enabled:
            if not totp_code and not backup_code:
                logger.info("login_two_factor_required", identity_id=identity.id)
                raise TwoFactorRequiredError()
            factor = self.two_factor.verify_login_code(
                identity.id, totp_code=totp_code, backup_code=backup_code
            )
            if factor is None:
                fail_reason = "invalid_two_factor"
                self.audit.record(
                    identity.id,
                    SecurityEventKind.INVALID_2FA_ATTEMPT,
                    "Invalid two-factor code submitted at login",
                    Severity.WARNING,
                    origin=origin,
                    tenant_id=identity.tenant_id,
                )
            elif factor == "backup":
                self.audit.record(
                    identity.id,
                    SecurityEventKind.TWO_FA_BACKUP_USED,
                    "Backup code used to sign in",
                    Severity.WARNING,
                    metadata={"remaining": self.two_factor.remaining_backup_codes(identity.id)},
                    origin=origin,
                    tenant_id=identity.tenant_id,
                )

        outcome = self.lockout.record_outcome(identity.id, fail_reason is None, origin=origin)
        if outcome.locked:
            self.audit.record_login_attempt(
                email, False, identity=identity, fail_reason="account_locked", origin=origin
            )
            raise AccountLockedError(locked_until=outcome.locked_until)
        if fail_reason is not None:
            self.audit.record(
                identity.id,
                SecurityEventKind.LOGIN_FAILED,
                "Failed login attempt",
                Severity.WARNING,
                metadata={
                    "reason": fail_reason,
                    "attempts_remaining": outcome.attempts_remaining,
                },
                origin=origin,
                tenant_id=identity.tenant_id,
            )
            self.audit.record_login_attempt(
                email, False, identity=identity, fail_reason=fail_reason, origin=origin
            )
            raise InvalidCredentialsError()

        suspicion = self.detector.evaluate(
            identity.id, origin.ip_address, origin.user_agent, tenant_id=identity.tenant_id
        )
        if self.hasher.needs_rehash(identity.password_hash):
            rehashed = await asyncio.to_thread(self.hasher.hash, password)
            self.store.set_password_hash(identity.id, rehashed)
            logger.info("password_rehashed", identity_id=identity.id)

        pair = self.tokens.issue_token_pair(identity, origin)
        self.audit.record_login_attempt(email, True, identity=identity, origin=origin)
        self.audit.record(
            identity.id,
            SecurityEventKind.LOGIN_SUCCESS,
            "Successful login",
            Severity.INFO,
            metadata={"suspicious": suspicion.suspicious},
            origin=origin,
            tenant_id=identity.tenant_id,
        )
        refreshed = self.store.get_identity(identity.id) or identity
        return LoginResult(
            identity=IdentitySummary.of(refreshed),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            suspicious=suspicion.suspicious,
        )

    # token lifecycle
    async def refresh(self, refresh_token: str, origin: Optional[Origin] = None) -> RefreshResult:
        snapshot = self.tokens.verify_and_consume_refresh_token(refresh_token)
        if not snapshot:
            raise TokenRevokedOrUnknownError()
        tenant = self.store.get_tenant(snapshot.tenant_id)
        if not tenant or not tenant.is_active:
            self.tokens.revoke(refresh_token)
            raise TenantInactiveError()

        rotated: Optional[str] = None
        if self.settings.rotate_refresh_tokens:
            # Only the caller that flips the row may mint the replacement
            if not self.tokens.revoke(refresh_token):
                logger.warning("refresh_token_rotation_lost", identity_id=snapshot.id)
                raise TokenRevokedOrUnknownError()
            rotated = self.tokens.issue_refresh_token(snapshot.id, origin)
        access_token = self.tokens.issue_access_token(
            snapshot.id, snapshot.tenant_id, snapshot.role, snapshot.email
        )
        self.audit.record(
            snapshot.id,
            SecurityEventKind.TOKEN_REFRESH,
            "Access token refreshed",
            Severity.INFO,
            metadata={"rotated": rotated is not None},
            origin=origin,
            tenant_id=snapshot.tenant_id,
        )
        return RefreshResult(
            access_token=access_token,
            expires_in=self.tokens.access_ttl_seconds,
            refresh_token=rotated,
        )

    async def authenticate(self, token: Optional[str]) -> AccessClaims:
        claims = self.tokens.verify_access_token(token) if token else None
        if not claims:
            raise TokenInvalidError()
        if await self.denylist.contains(claims.jti):
            logger.info("access_token_denylisted", jti=claims.jti)
            raise TokenInvalidError()
        return claims

    async def logout(
        self,
        claims: AccessClaims,
        refresh_token: Optional[str] = None,
        origin: Optional[Origin] = None,
    ) -> None:
        """Revoke the caller's session; never raises."""
        if refresh_token:
            try:
                record = self.tokens.find_refresh_token(refresh_token)
                if record and record.identity_id == claims.identity_id:
                    self.store.revoke_refresh_token(record.id)
                elif record:
                    logger.warning(
                        "logout_foreign_refresh_token",
                        identity_id=claims.identity_id,
                        session_id=record.id,
                    )
            except Exception as exc:
                logger.warning(
                    "logout_refresh_revoke_failed", identity_id=claims.identity_id, error=str(exc)
                )
        try:
            await self.denylist.add(claims.jti, claims.expires_at)
        except Exception as exc:
            logger.warning("logout_denylist_failed", jti=claims.jti, error=str(exc))
        self.audit.record(
            claims.identity_id,
            SecurityEventKind.LOGOUT,
            "User logged out",
            Severity.INFO,
            origin=origin,
            tenant_id=claims.tenant_id,
        )

    # passwords
    def _reuse_violations(self, identity: Identity, new_password: str) -> List[Dict[str, str]]:
        found: List[Dict[str, str]] = []
        if self.hasher.verify(new_password, identity.password_hash):
            found.append(
                {"rule": "same_as_current", "message": "must differ from the current password"}
            )
            return found
        depth = self.settings.password_history_depth
        if depth <= 0:
            return found
        for previous in self.store.get_password_history(identity.id, depth):
            if self.hasher.verify(new_password, previous):
                found.append(
                    {
                        "rule": "reused",
                        "message": f"must not match any of the last {depth} passwords",
                    }
                )
                break
        return found

    async def change_password(
        self,
        identity_id: str,
        current_password: str,
        new_password: str,
        origin: Optional[Origin] = None,
        *,
        claims: Optional[AccessClaims] = None,
    ) -> None:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("identity not found")
        if not await asyncio.to_thread(
            self.hasher.verify, current_password or "", identity.password_hash
        ):
            logger.info("password_change_rejected", identity_id=identity_id)
            raise InvalidCredentialsError("current password is incorrect")

        violations = [v.as_dict() for v in self.policy.violations(new_password, email=identity.email)]
        violations.extend(await asyncio.to_thread(self._reuse_violations, identity, new_password))
        if violations:
            raise PasswordPolicyViolation(violations, strength=self.policy.strength(new_password))

        new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        self.store.set_password_hash(
            identity.id, new_hash, history_depth=self.settings.password_history_depth
        )
        revoked = 0
        if self.settings.revoke_sessions_on_password_change:
            revoked = self.tokens.revoke_all(identity.id)
        if claims is not None:
            try:
                await self.denylist.add(claims.jti, claims.expires_at)
            except Exception as exc:
                logger.warning("password_change_denylist_failed", jti=claims.jti, error=str(exc))
        self.audit.record(
            identity.id,
            SecurityEventKind.PASSWORD_CHANGED,
            "Password changed",
            Severity.INFO,
            metadata={"sessions_revoked": revoked},
            origin=origin,
            tenant_id=identity.tenant_id,
        )

    # administration
    def _authorize(
        self,
        acting: AccessClaims,
        tenant_id: Optional[str],
        action: str,
        *,
        target_id: Optional[str] = None,
        origin: Optional[Origin] = None,
    ) -> None:
        """Require an Admin/Manager actor in ``tenant_id``; audit every denial."""
        if acting.role in ADMIN_ROLES and acting.tenant_id == tenant_id:
            return
        reason = "role" if acting.role not in ADMIN_ROLES else "tenant"
        logger.warning(
            "permission_denied",
            identity_id=acting.identity_id,
            action=action,
            reason=reason,
        )
        self.audit.record(
            acting.identity_id,
            SecurityEventKind.PERMISSION_DENIED,
            f"Permission denied for {action}",
            Severity.WARNING,
            metadata={"action": action, "target_id": target_id, "reason": reason},
            origin=origin,
            tenant_id=acting.tenant_id,
        )
        raise PermissionDeniedError()

    async def unlock_account(
        self,
        acting: AccessClaims,
        target_identity_id: str,
        origin: Optional[Origin] = None,
    ) -> None:
        # Unknown targets are denied the same way as foreign ones
        target = self.store.get_identity(target_identity_id)
        self._authorize(
            acting,
            target.tenant_id if target else None,
            "unlock_account",
            target_id=target_identity_id,
            origin=origin,
        )
        self.lockout.unlock(target.id, unlocked_by=acting.identity_id, origin=origin)

    def list_active_sessions(
        self, acting: AccessClaims, *, identity_id: Optional[str] = None
    ) -> List[RefreshTokenRecord]:
        """Staff see their own sessions; Admin/Manager may see the whole tenant."""
        if acting.role not in ADMIN_ROLES:
            identity_id = acting.identity_id
        return self.tokens.list_active_sessions(acting.tenant_id, identity_id=identity_id)

    async def terminate_session(
        self,
        acting: AccessClaims,
        session_id: str,
        origin: Optional[Origin] = None,
    ) -> None:
        record = self.store.get_refresh_token(session_id)
        if not record:
            raise NotFoundError("session not found")
        owner = self.store.get_identity(record.identity_id)
        if record.identity_id != acting.identity_id:
            if not owner:
                raise NotFoundError("session not found")
            self._authorize(
                acting, owner.tenant_id, "terminate_session", target_id=session_id, origin=origin
            )
        self.tokens.revoke_session(record.id)
        self.audit.record(
            record.identity_id,
            SecurityEventKind.SESSION_TERMINATED,
            "Session terminated",
            Severity.INFO,
            metadata={"session_id": record.id, "terminated_by": acting.identity_id},
            origin=origin,
            tenant_id=owner.tenant_id if owner else acting.tenant_id,
        )

    # two-factor
    def _require_identity(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("identity not found")
        return identity

    async def _confirm_password(self, identity: Identity, password: str) -> None:
        if not await asyncio.to_thread(self.hasher.verify, password or "", identity.password_hash):
            raise InvalidCredentialsError("password is incorrect")

    def begin_two_factor_setup(self, identity_id: str) -> TwoFactorSetup:
        identity = self._require_identity(identity_id)
        return self.two_factor.begin_setup(identity.id, identity.email)

    def enable_two_factor(
        self, identity_id: str, code: str, origin: Optional[Origin] = None
    ) -> List[str]:
        identity = self._require_identity(identity_id)
        codes = self.two_factor.enable(identity.id, code)
        self.audit.record(
            identity.id,
            SecurityEventKind.TWO_FA_ENABLED,
            "Two-factor authentication enabled",
            Severity.INFO,
            origin=origin,
            tenant_id=identity.tenant_id,
        )
        return codes

    async def disable_two_factor(
        self,
        identity_id: str,
        password: str,
        code: str,
        origin: Optional[Origin] = None,
    ) -> None:
        identity = self._require_identity(identity_id)
        if not identity.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        await self._confirm_password(identity, password)
        if not self.two_factor.verify_login_code(identity.id, totp_code=code, backup_code=code):
            self.audit.record(
                identity.id,
                SecurityEventKind.INVALID_2FA_ATTEMPT,
                "Invalid two-factor code submitted while disabling two-factor",
                Severity.WARNING,
                origin=origin,
                tenant_id=identity.tenant_id,
            )
            raise ValidationError("invalid two-factor code")
        self.two_factor.disable(identity.id)
        self.audit.record(
            identity.id,
            SecurityEventKind.TWO_FA_DISABLED,
            "Two-factor authentication disabled",
            Severity.WARNING,
            origin=origin,
            tenant_id=identity.tenant_id,
        )

    async def regenerate_backup_codes(
        self, identity_id: str, password: str, origin: Optional[Origin] = None
    ) -> List[str]:
        identity = self._require_identity(identity_id)
        await self._confirm_password(identity, password)
        codes = self.two_factor.regenerate_backup_codes(identity.id)
        logger.info("backup_codes_regenerated", identity_id=identity.id)
        return codes

    # audit reads
    def list_security_events(
        self,
        acting: AccessClaims,
        *,
        identity_id: Optional[str] = None,
        kind: Optional[SecurityEventKind] = None,
        severity: Optional[Severity] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SecurityEvent]:
        self._authorize(acting, acting.tenant_id, "list_security_events")
        return self.audit.list_events(
            acting.tenant_id,
            identity_id=identity_id,
            kind=kind,
            severity=severity,
            since=since,
            until=until,
            page=page,
            limit=limit,
        )

    def list_login_history(
        self,
        acting: AccessClaims,
        *,
        identity_id: Optional[str] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[LoginHistoryRecord]:
        self._authorize(acting, acting.tenant_id, "list_login_history")
        return self.audit.list_login_history(
            acting.tenant_id,
            identity_id=identity_id,
            success=success,
            since=since,
            until=until,
            page=page,
            limit=limit,
        )

    def security_report(self, acting: AccessClaims, *, days: int = 30) -> Dict[str, Any]:
        self._authorize(acting, acting.tenant_id, "security_report")
        return self.audit.security_report(acting.tenant_id, days=days)
