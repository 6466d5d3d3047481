"""Scenario tests for the authentication orchestrator over the in-memory store."""

import asyncio
import threading
from datetime import timedelta

import pytest

from staffauth.config import Settings
from staffauth.service.anomaly import SuspiciousLoginDetector
from staffauth.service.audit import SecurityAuditLog
from staffauth.service.auth import AuthService
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
from staffauth.service.tokens import AccessTokenDenylist, TokenService
from staffauth.service.two_factor import TwoFactorService
from staffauth.storage.memory import MemoryStore
from staffauth.storage.models import (
    UNRESOLVED_TENANT,
    EventFilter,
    LoginHistoryFilter,
    Origin,
    Role,
    SecurityEventKind,
)

SECRET = "unit-test-secret-0123456789abcdefghijklmnop"
PASSWORD = "Tr1cky#Horse"
ORIGIN = Origin("198.51.100.7", "pytest-agent")


class CountingHasher(PasswordHasher):
    """Hasher that counts verifications so tests can prove a hash was skipped."""

    def __init__(self):
        super().__init__(time_cost=1, memory_cost=8192, parallelism=1)
        self.verifications = 0

    def verify(self, password, password_hash):
        self.verifications += 1
        return super().verify(password, password_hash)


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, password_history_depth=3)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return CountingHasher()


@pytest.fixture
def service(store, settings, hasher, clock):
    audit = SecurityAuditLog(store, clock=clock)
    tokens = TokenService(store, settings, clock=clock)
    return AuthService(
        store,
        settings,
        hasher=hasher,
        policy=PasswordPolicy(),
        tokens=tokens,
        denylist=AccessTokenDenylist(clock=clock),
        audit=audit,
        lockout=LockoutPolicy(
            store, audit, threshold=5, lock_duration=timedelta(minutes=30), clock=clock
        ),
        detector=SuspiciousLoginDetector(store, audit, clock=clock),
        two_factor=TwoFactorService(store, encryption_key="test-mfa-key", clock=clock),
        clock=clock,
    )


@pytest.fixture
def tenant(store):
    return store.create_tenant("Acme")


async def _provision(service, tenant, email, role=Role.STAFF):
    return await service.provision_identity(tenant.id, email, PASSWORD, role=role)


@pytest.fixture
def staff(service, tenant):
    return asyncio.run(_provision(service, tenant, "ana@acme.test"))


def _events(store, tenant_id, kind):
    items, _ = store.list_security_events(
        EventFilter(tenant_id=tenant_id, kind=kind), offset=0, limit=100
    )
    return items


def _history(store, tenant_id, **criteria):
    items, _ = store.list_login_history(
        LoginHistoryFilter(tenant_id=tenant_id, **criteria), offset=0, limit=100
    )
    return items


async def _claims(service, email):
    result = await service.login(email, PASSWORD, ORIGIN)
    return await service.authenticate(result.access_token), result


class TestProvisioning:
    async def test_weak_password_is_rejected(self, service, tenant):
        with pytest.raises(PasswordPolicyViolation):
            await service.provision_identity(tenant.id, "ana@acme.test", "short")

    async def test_unknown_tenant(self, service):
        with pytest.raises(NotFoundError):
            await service.provision_identity("missing", "ana@acme.test", PASSWORD)


class TestLogin:
    """Credential checks, lockout and session issuance."""

    async def test_successful_login_issues_tokens_and_audits(self, service, store, staff):
        result = await service.login("ANA@acme.test", PASSWORD, ORIGIN)

        claims = await service.authenticate(result.access_token)
        assert claims.identity_id == staff.id
        assert result.refresh_token
        assert result.expires_in == 15 * 60
        assert result.identity.last_login_at is not None
        assert result.suspicious
        success = _events(store, staff.tenant_id, SecurityEventKind.LOGIN_SUCCESS)
        assert success[0].metadata == {"suspicious": True}
        assert _history(store, staff.tenant_id, success=True)[0].ip_address == "198.51.100.7"

    async def test_second_login_from_same_origin_is_not_suspicious(self, service, staff):
        await service.login(staff.email, PASSWORD, ORIGIN)

        result = await service.login(staff.email, PASSWORD, ORIGIN)

        assert not result.suspicious

    async def test_unknown_email_is_indistinguishable_and_recorded(self, service, store):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await service.login("nobody@acme.test", PASSWORD, ORIGIN)

        assert exc_info.value.error_code == "unauthorized"
        rows = _history(store, UNRESOLVED_TENANT)
        assert rows[0].fail_reason == "unknown_identity"
        assert rows[0].identity_id is None

    async def test_wrong_password_reports_attempts_remaining(self, service, store, staff):
        with pytest.raises(InvalidCredentialsError):
            await service.login(staff.email, "Wrong#Pass1", ORIGIN)

        failed = _events(store, staff.tenant_id, SecurityEventKind.LOGIN_FAILED)
        assert failed[0].metadata == {"reason": "invalid_password", "attempts_remaining": 4}
        assert store.get_identity(staff.id).failed_attempts == 1

    async def test_fifth_failure_locks_and_correct_password_is_not_checked(
        self, service, store, staff, hasher
    ):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await service.login(staff.email, "Wrong#Pass1", ORIGIN)
        with pytest.raises(AccountLockedError) as exc_info:
            await service.login(staff.email, "Wrong#Pass1", ORIGIN)
        assert exc_info.value.locked_until is not None

        before = hasher.verifications
        with pytest.raises(AccountLockedError):
            await service.login(staff.email, PASSWORD, ORIGIN)

        assert hasher.verifications == before
        assert store.get_identity(staff.id).failed_attempts == 5
        assert len(_events(store, staff.tenant_id, SecurityEventKind.ACCOUNT_LOCKED)) == 1

    async def test_lock_elapses(self, service, staff, clock):
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                await service.login(staff.email, "Wrong#Pass1", ORIGIN)

        clock.advance(minutes=30, seconds=1)

        result = await service.login(staff.email, PASSWORD, ORIGIN)
        assert result.access_token

    async def test_inactive_identity(self, service, store, staff):
        store.update_identity(staff.id, is_active=False)

        with pytest.raises(AccountInactiveError):
            await service.login(staff.email, PASSWORD, ORIGIN)

    async def test_inactive_tenant(self, service, store, staff):
        store.set_tenant_active(staff.tenant_id, False)

        with pytest.raises(TenantInactiveError):
            await service.login(staff.email, PASSWORD, ORIGIN)


class TestTokens:
    async def test_refresh_rotates_and_old_token_is_rejected(self, service, store, staff):
        result = await service.login(staff.email, PASSWORD, ORIGIN)

        refreshed = await service.refresh(result.refresh_token, ORIGIN)

        assert refreshed.refresh_token and refreshed.refresh_token != result.refresh_token
        assert (await service.authenticate(refreshed.access_token)).identity_id == staff.id
        with pytest.raises(TokenRevokedOrUnknownError):
            await service.refresh(result.refresh_token, ORIGIN)
        events = _events(store, staff.tenant_id, SecurityEventKind.TOKEN_REFRESH)
        assert events[0].metadata == {"rotated": True}

    def test_concurrent_refresh_rotates_once(self, service, staff):
        result = asyncio.run(service.login(staff.email, PASSWORD, ORIGIN))
        barrier = threading.Barrier(2)
        verify = service.tokens.verify_and_consume_refresh_token

        def verify_then_wait(secret):
            snapshot = verify(secret)
            barrier.wait(timeout=5)
            return snapshot

        service.tokens.verify_and_consume_refresh_token = verify_then_wait
        rotated, rejected = [], []

        def worker():
            try:
                refreshed = asyncio.run(service.refresh(result.refresh_token, ORIGIN))
            except TokenRevokedOrUnknownError:
                rejected.append(True)
            else:
                rotated.append(refreshed.refresh_token)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(rotated) == 1
        assert len(rejected) == 1
        assert len(service.tokens.list_active_sessions(staff.tenant_id)) == 1

    async def test_refresh_without_rotation(self, service, settings, staff):
        service.settings = settings.model_copy(update={"rotate_refresh_tokens": False})
        result = await service.login(staff.email, PASSWORD, ORIGIN)

        refreshed = await service.refresh(result.refresh_token)

        assert refreshed.refresh_token is None
        assert await service.refresh(result.refresh_token)

    async def test_refresh_for_inactive_tenant_revokes(self, service, store, staff):
        result = await service.login(staff.email, PASSWORD, ORIGIN)
        store.set_tenant_active(staff.tenant_id, False)

        with pytest.raises(TenantInactiveError):
            await service.refresh(result.refresh_token)
        store.set_tenant_active(staff.tenant_id, True)
        with pytest.raises(TokenRevokedOrUnknownError):
            await service.refresh(result.refresh_token)

    async def test_expired_access_token(self, service, staff, clock):
        result = await service.login(staff.email, PASSWORD, ORIGIN)
        clock.advance(minutes=16)

        with pytest.raises(TokenInvalidError):
            await service.authenticate(result.access_token)

    async def test_logout_denylists_access_token_and_revokes_refresh(self, service, store, staff):
        claims, result = await _claims(service, staff.email)

        await service.logout(claims, result.refresh_token, ORIGIN)

        with pytest.raises(TokenInvalidError):
            await service.authenticate(result.access_token)
        with pytest.raises(TokenRevokedOrUnknownError):
            await service.refresh(result.refresh_token)
        assert len(_events(store, staff.tenant_id, SecurityEventKind.LOGOUT)) == 1

    async def test_logout_ignores_another_identitys_refresh_token(self, service, tenant, staff):
        other = await _provision(service, tenant, "bo@acme.test")
        claims, _ = await _claims(service, staff.email)
        foreign = await service.login(other.email, PASSWORD, ORIGIN)

        await service.logout(claims, foreign.refresh_token)

        assert await service.refresh(foreign.refresh_token)


class TestChangePassword:
    async def test_change_revokes_sessions_and_denylists_caller(self, service, store, staff):
        claims, result = await _claims(service, staff.email)

        await service.change_password(staff.id, PASSWORD, "N3w#Passphrase", ORIGIN, claims=claims)

        with pytest.raises(TokenInvalidError):
            await service.authenticate(result.access_token)
        with pytest.raises(TokenRevokedOrUnknownError):
            await service.refresh(result.refresh_token)
        changed = _events(store, staff.tenant_id, SecurityEventKind.PASSWORD_CHANGED)
        assert changed[0].metadata == {"sessions_revoked": 1}
        assert (await service.login(staff.email, "N3w#Passphrase")).access_token

    async def test_wrong_current_password(self, service, staff):
        with pytest.raises(InvalidCredentialsError):
            await service.change_password(staff.id, "Wrong#Pass1", "N3w#Passphrase")

    async def test_same_password_is_rejected(self, service, staff):
        with pytest.raises(PasswordPolicyViolation) as exc_info:
            await service.change_password(staff.id, PASSWORD, PASSWORD)

        assert [v["rule"] for v in exc_info.value.violations] == ["same_as_current"]

    async def test_recent_password_is_rejected(self, service, staff):
        await service.change_password(staff.id, PASSWORD, "N3w#Passphrase")

        with pytest.raises(PasswordPolicyViolation) as exc_info:
            await service.change_password(staff.id, "N3w#Passphrase", PASSWORD)

        assert [v["rule"] for v in exc_info.value.violations] == ["reused"]

    async def test_policy_violations_are_itemized(self, service, staff):
        with pytest.raises(PasswordPolicyViolation) as exc_info:
            await service.change_password(staff.id, PASSWORD, "weak")

        rules = {v["rule"] for v in exc_info.value.violations}
        assert {"min_length", "uppercase", "digit", "special"} <= rules
        assert exc_info.value.strength == "weak"

    async def test_unknown_identity(self, service):
        with pytest.raises(NotFoundError):
            await service.change_password("missing", PASSWORD, "N3w#Passphrase")


class TestTwoFactorLogin:
    async def _enable(self, service, staff, clock):
        setup = service.begin_two_factor_setup(staff.id)
        code = service.two_factor.generate_totp(setup.secret, clock.now.timestamp())
        return setup, service.enable_two_factor(staff.id, code, ORIGIN)

    async def test_password_alone_is_not_enough(self, service, store, staff, clock):
        await self._enable(service, staff, clock)

        with pytest.raises(TwoFactorRequiredError) as exc_info:
            await service.login(staff.email, PASSWORD, ORIGIN)

        assert exc_info.value.status_code == 401
        assert store.get_identity(staff.id).failed_attempts == 0
        assert len(_events(store, staff.tenant_id, SecurityEventKind.TWO_FA_ENABLED)) == 1

    async def test_totp_login(self, service, staff, clock):
        setup, _ = await self._enable(service, staff, clock)
        clock.advance(minutes=2)
        code = service.two_factor.generate_totp(setup.secret, clock.now.timestamp())

        result = await service.login(staff.email, PASSWORD, ORIGIN, totp_code=code)

        assert result.identity.two_factor_enabled

    async def test_bad_code_counts_as_failure(self, service, store, staff, clock):
        await self._enable(service, staff, clock)

        with pytest.raises(InvalidCredentialsError):
            await service.login(staff.email, PASSWORD, ORIGIN, backup_code="NOTACODE")

        assert store.get_identity(staff.id).failed_attempts == 1
        assert len(_events(store, staff.tenant_id, SecurityEventKind.INVALID_2FA_ATTEMPT)) == 1

    async def test_backup_code_login_is_audited(self, service, store, staff, clock):
        _, codes = await self._enable(service, staff, clock)

        await service.login(staff.email, PASSWORD, ORIGIN, backup_code=codes[0])

        used = _events(store, staff.tenant_id, SecurityEventKind.TWO_FA_BACKUP_USED)
        assert used[0].metadata == {"remaining": 9}
        with pytest.raises(InvalidCredentialsError):
            await service.login(staff.email, PASSWORD, ORIGIN, backup_code=codes[0])

    async def test_disable_requires_password_and_code(self, service, store, staff, clock):
        setup, codes = await self._enable(service, staff, clock)

        with pytest.raises(InvalidCredentialsError):
            await service.disable_two_factor(staff.id, "Wrong#Pass1", codes[0])
        with pytest.raises(ValidationError):
            await service.disable_two_factor(staff.id, PASSWORD, "000000x")

        await service.disable_two_factor(staff.id, PASSWORD, codes[1])

        assert not store.get_identity(staff.id).two_factor_enabled
        assert (await service.login(staff.email, PASSWORD)).access_token

    async def test_regenerate_backup_codes(self, service, staff, clock):
        _, old = await self._enable(service, staff, clock)

        new = await service.regenerate_backup_codes(staff.id, PASSWORD)

        assert set(new).isdisjoint(old)


class TestAdministration:
    """Tenant-scoped unlock, session management and audit reads."""

    @pytest.fixture
    def admin(self, service, tenant):
        return asyncio.run(_provision(service, tenant, "root@acme.test", role=Role.ADMIN))

    async def _lock(self, service, identity):
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                await service.login(identity.email, "Wrong#Pass1")

    async def test_admin_unlocks_same_tenant_identity(self, service, store, staff, admin):
        await self._lock(service, staff)
        acting, _ = await _claims(service, admin.email)

        await service.unlock_account(acting, staff.id, ORIGIN)

        assert (await service.login(staff.email, PASSWORD)).access_token
        unlocked = _events(store, staff.tenant_id, SecurityEventKind.ACCOUNT_UNLOCKED)
        assert unlocked[0].metadata == {"unlocked_by": admin.id}

    async def test_cross_tenant_unlock_is_denied_and_audited(self, service, store, staff):
        other = store.create_tenant("Other")
        foreign_admin = await _provision(service, other, "admin@other.test", role=Role.ADMIN)
        await self._lock(service, staff)
        acting, _ = await _claims(service, foreign_admin.email)

        with pytest.raises(PermissionDeniedError):
            await service.unlock_account(acting, staff.id)

        assert store.get_identity(staff.id).failed_attempts == 5
        denied = _events(store, other.id, SecurityEventKind.PERMISSION_DENIED)
        assert denied[0].identity_id == foreign_admin.id
        assert denied[0].metadata["action"] == "unlock_account"
        assert denied[0].metadata["reason"] == "tenant"

    async def test_staff_cannot_unlock(self, service, tenant, staff):
        peer = await _provision(service, tenant, "bo@acme.test")
        acting, _ = await _claims(service, staff.email)

        with pytest.raises(PermissionDeniedError):
            await service.unlock_account(acting, peer.id)

    async def test_unlock_unknown_identity_is_denied_like_foreign(self, service, store, admin):
        acting, _ = await _claims(service, admin.email)

        with pytest.raises(PermissionDeniedError):
            await service.unlock_account(acting, "missing")

        denied = _events(store, admin.tenant_id, SecurityEventKind.PERMISSION_DENIED)
        assert denied[0].metadata == {
            "action": "unlock_account",
            "target_id": "missing",
            "reason": "tenant",
        }

    async def test_staff_unlock_of_unknown_identity_is_denied_by_role(self, service, staff):
        acting, _ = await _claims(service, staff.email)

        with pytest.raises(PermissionDeniedError):
            await service.unlock_account(acting, "missing")

    async def test_staff_see_only_their_sessions(self, service, staff, admin):
        acting, _ = await _claims(service, staff.email)
        admin_claims, _ = await _claims(service, admin.email)

        own = service.list_active_sessions(acting, identity_id=admin.id)
        everyone = service.list_active_sessions(admin_claims)

        assert {s.identity_id for s in own} == {staff.id}
        assert {s.identity_id for s in everyone} == {staff.id, admin.id}

    async def test_owner_terminates_own_session(self, service, store, staff):
        acting, result = await _claims(service, staff.email)
        session = service.list_active_sessions(acting)[0]

        await service.terminate_session(acting, session.id)

        with pytest.raises(TokenRevokedOrUnknownError):
            await service.refresh(result.refresh_token)
        terminated = _events(store, staff.tenant_id, SecurityEventKind.SESSION_TERMINATED)
        assert terminated[0].metadata == {"session_id": session.id, "terminated_by": staff.id}

    async def test_staff_cannot_terminate_someone_elses_session(self, service, staff, admin):
        admin_claims, _ = await _claims(service, admin.email)
        acting, _ = await _claims(service, staff.email)
        session = service.list_active_sessions(admin_claims, identity_id=admin.id)[0]

        with pytest.raises(PermissionDeniedError):
            await service.terminate_session(acting, session.id)

    async def test_terminate_unknown_session(self, service, admin):
        acting, _ = await _claims(service, admin.email)

        with pytest.raises(NotFoundError):
            await service.terminate_session(acting, "missing")

    async def test_audit_reads_require_admin(self, service, staff, admin):
        acting, _ = await _claims(service, staff.email)
        admin_claims, _ = await _claims(service, admin.email)

        with pytest.raises(PermissionDeniedError):
            service.list_security_events(acting)
        with pytest.raises(PermissionDeniedError):
            service.security_report(acting)

        page = service.list_security_events(admin_claims, kind=SecurityEventKind.LOGIN_SUCCESS)
        history = service.list_login_history(admin_claims, success=True)
        report = service.security_report(admin_claims, days=7)
        assert page.total == 2
        assert history.total == 2
        assert report["stats"]["total_logins"] == 2
