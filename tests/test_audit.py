"""Unit tests for the security event log, login history and reports."""

from datetime import timedelta

import pytest

from staffauth.service.audit import MAX_PAGE_SIZE, SecurityAuditLog
from staffauth.storage.memory import MemoryStore
from staffauth.storage.models import (
    UNRESOLVED_TENANT,
    Origin,
    Resolved,
    SecurityEventKind,
    Severity,
    Unresolved,
)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tenant(store):
    return store.create_tenant("Acme")


@pytest.fixture
def identity(store, tenant):
    return store.create_identity("ana@acme.test", "hash", tenant_id=tenant.id)


@pytest.fixture
def audit(store, clock):
    return SecurityAuditLog(store, clock=clock)


class TestRecordEvent:
    def test_tenant_is_resolved_from_identity(self, audit, identity):
        assert audit.resolve_tenant(identity.id) == Resolved(identity.tenant_id)

        event = audit.record(
            identity.id,
            SecurityEventKind.PASSWORD_CHANGED,
            "Password changed",
            metadata={"sessions_revoked": 2},
            origin=Origin("10.0.0.1", "pytest"),
        )

        assert event.tenant_id == identity.tenant_id
        assert event.severity == Severity.INFO
        assert event.metadata == {"sessions_revoked": 2}
        assert event.ip_address == "10.0.0.1"

    def test_unresolvable_tenant_drops_the_event(self, audit, store, tenant):
        assert audit.resolve_tenant("ghost") == Unresolved("identity_not_found")
        assert audit.resolve_tenant(None) == Unresolved("identity_missing")

        assert audit.record("ghost", SecurityEventKind.LOGOUT, "Logout") is None
        assert store.security_events == []

    def test_write_failure_is_swallowed(self, identity, clock):
        class ReadOnlyStore(MemoryStore):
            def append_security_event(self, event):
                raise RuntimeError("disk full")

        audit = SecurityAuditLog(ReadOnlyStore(), clock=clock)

        assert audit.record(
            identity.id, SecurityEventKind.LOGOUT, "Logout", tenant_id=identity.tenant_id
        ) is None


class TestLoginHistory:
    def test_unknown_email_is_stored_under_unresolved_tenant(self, audit, store):
        record = audit.record_login_attempt("Nobody@Acme.test", False, fail_reason="unknown_identity")

        assert record.tenant_id == UNRESOLVED_TENANT
        assert record.identity_id is None
        assert record.email == "nobody@acme.test"

    def test_known_email_resolves_identity(self, audit, identity):
        record = audit.record_login_attempt("ana@acme.test", True, origin=Origin("10.0.0.1", "ua"))

        assert record.identity_id == identity.id
        assert record.tenant_id == identity.tenant_id

    def test_listing_is_tenant_scoped_and_filterable(self, audit, store, identity):
        other = store.create_tenant("Other")
        stranger = store.create_identity("bo@other.test", "hash", tenant_id=other.id)
        audit.record_login_attempt(identity.email, True, identity=identity)
        audit.record_login_attempt(identity.email, False, identity=identity, fail_reason="invalid_password")
        audit.record_login_attempt(stranger.email, True, identity=stranger)

        everything = audit.list_login_history(identity.tenant_id)
        failures = audit.list_login_history(identity.tenant_id, success=False)

        assert everything.total == 2
        assert failures.total == 1
        assert failures.items[0].fail_reason == "invalid_password"


class TestListEvents:
    def test_pagination_is_newest_first(self, audit, identity, clock):
        for i in range(5):
            audit.record(identity.id, SecurityEventKind.TOKEN_REFRESH, f"refresh {i}")
            clock.advance(minutes=1)

        page = audit.list_events(identity.tenant_id, page=2, limit=2)

        assert [e.description for e in page.items] == ["refresh 2", "refresh 1"]
        assert page.pagination() == {
            "page": 2,
            "limit": 2,
            "total": 5,
            "total_pages": 3,
            "has_next": True,
            "has_prev": True,
        }

    def test_limit_is_capped(self, audit, identity):
        page = audit.list_events(identity.tenant_id, limit=10_000)

        assert page.limit == MAX_PAGE_SIZE

    def test_filters_by_kind_severity_and_time(self, audit, identity, clock):
        start = clock.now
        audit.record(identity.id, SecurityEventKind.LOGIN_FAILED, "failed", Severity.WARNING)
        clock.advance(hours=1)
        audit.record(identity.id, SecurityEventKind.LOGIN_SUCCESS, "ok")

        assert audit.list_events(identity.tenant_id, kind=SecurityEventKind.LOGIN_FAILED).total == 1
        assert audit.list_events(identity.tenant_id, severity=Severity.INFO).total == 1
        assert audit.list_events(identity.tenant_id, since=start + timedelta(minutes=30)).total == 1
        assert audit.list_events(identity.tenant_id, until=start + timedelta(minutes=30)).total == 1

    def test_other_tenants_are_invisible(self, audit, store, identity):
        other = store.create_tenant("Other")
        audit.record(identity.id, SecurityEventKind.LOGOUT, "Logout")

        assert audit.list_events(other.id).total == 0


class TestSecurityReport:
    def test_stats_and_breakdown(self, audit, store, identity, clock):
        audit.record_login_attempt(identity.email, True, identity=identity)
        audit.record_login_attempt(identity.email, False, identity=identity)
        audit.record_login_attempt(identity.email, False, identity=identity)
        audit.record(identity.id, SecurityEventKind.SUSPICIOUS_LOGIN, "new origin", Severity.WARNING)
        audit.record(identity.id, SecurityEventKind.ACCOUNT_LOCKED, "locked", Severity.CRITICAL)
        store.update_identity(identity.id, locked_until=clock.now + timedelta(minutes=30))

        report = audit.security_report(identity.tenant_id, days=30)

        stats = report["stats"]
        assert stats["total_logins"] == 3
        assert stats["failed_logins"] == 2
        assert stats["success_rate"] == pytest.approx(33.33)
        assert stats["locked_accounts"] == 1
        assert stats["security_events"] == 2
        assert stats["suspicious_logins"] == 1
        assert report["events_by_kind"] == {"suspicious_login": 1, "account_locked": 1}
        assert report["events_by_severity"] == {"warning": 1, "critical": 1}
        assert any("locked" in r for r in report["recommendations"])

    def test_old_activity_is_outside_the_period(self, audit, identity, clock):
        audit.record_login_attempt(identity.email, False, identity=identity)
        clock.advance(days=8)

        stats = audit.security_stats(identity.tenant_id, days=7)

        assert stats["total_logins"] == 0
        assert stats["success_rate"] == 0.0
