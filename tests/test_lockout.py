"""Unit tests for the failed-attempt counter and account lockout."""

import threading
from datetime import timedelta

import pytest

from staffauth.service.audit import SecurityAuditLog
from staffauth.service.errors import NotFoundError
from staffauth.service.lockout import LockoutPolicy
from staffauth.storage.memory import MemoryStore
from staffauth.storage.models import EventFilter, SecurityEventKind, Severity


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity(store):
    tenant = store.create_tenant("Acme")
    return store.create_identity("ana@acme.test", "hash", tenant_id=tenant.id)


@pytest.fixture
def lockout(store, clock):
    return LockoutPolicy(
        store,
        SecurityAuditLog(store, clock=clock),
        threshold=5,
        lock_duration=timedelta(minutes=30),
        clock=clock,
    )


def _events(store, identity, kind):
    items, _ = store.list_security_events(
        EventFilter(tenant_id=identity.tenant_id, kind=kind), offset=0, limit=100
    )
    return items


class TestLockoutPolicy:
    """Counter, lock and unlock transitions."""

    def test_failures_count_down_remaining_attempts(self, lockout, identity):
        outcomes = [lockout.record_outcome(identity.id, False) for _ in range(4)]

        assert [o.attempts_remaining for o in outcomes] == [4, 3, 2, 1]
        assert not any(o.locked for o in outcomes)
        assert not lockout.is_locked(identity.id)

    def test_threshold_failure_locks_and_writes_critical_event(
        self, lockout, store, identity, clock
    ):
        for _ in range(4):
            lockout.record_outcome(identity.id, False)

        outcome = lockout.record_outcome(identity.id, False)

        assert outcome.locked
        assert outcome.attempts_remaining == 0
        assert outcome.locked_until == clock.now + timedelta(minutes=30)
        assert lockout.is_locked(identity.id)
        events = _events(store, identity, SecurityEventKind.ACCOUNT_LOCKED)
        assert len(events) == 1
        assert events[0].severity == Severity.CRITICAL
        assert events[0].metadata["attempts"] == 5

    def test_locked_identity_short_circuits_without_counting(self, lockout, store, identity):
        for _ in range(5):
            lockout.record_outcome(identity.id, False)

        outcome = lockout.record_outcome(identity.id, False)

        assert outcome.locked
        assert store.get_identity(identity.id).failed_attempts == 5
        assert len(_events(store, identity, SecurityEventKind.ACCOUNT_LOCKED)) == 1

    def test_success_while_locked_does_not_unlock(self, lockout, identity):
        for _ in range(5):
            lockout.record_outcome(identity.id, False)

        assert lockout.record_outcome(identity.id, True).locked
        assert lockout.is_locked(identity.id)

    def test_success_resets_counter(self, lockout, store, identity, clock):
        for _ in range(3):
            lockout.record_outcome(identity.id, False)

        outcome = lockout.record_outcome(identity.id, True)

        stored = store.get_identity(identity.id)
        assert not outcome.locked
        assert stored.failed_attempts == 0
        assert stored.locked_until is None
        assert stored.last_login_at == clock.now

    def test_lock_elapses_and_counter_restarts(self, lockout, store, identity, clock):
        for _ in range(5):
            lockout.record_outcome(identity.id, False)

        clock.advance(minutes=31)

        assert not lockout.is_locked(identity.id)
        outcome = lockout.record_outcome(identity.id, False)
        assert not outcome.locked
        assert outcome.attempts_remaining == 4

    def test_unlock_clears_lock_and_records_event(self, lockout, store, identity):
        for _ in range(5):
            lockout.record_outcome(identity.id, False)

        assert lockout.unlock(identity.id, unlocked_by="admin-1")

        stored = store.get_identity(identity.id)
        assert stored.failed_attempts == 0
        assert stored.locked_until is None
        events = _events(store, identity, SecurityEventKind.ACCOUNT_UNLOCKED)
        assert events[0].metadata == {"unlocked_by": "admin-1"}

    def test_unknown_identity(self, lockout):
        with pytest.raises(NotFoundError):
            lockout.record_outcome("missing", False)
        assert lockout.unlock("missing") is False
        assert lockout.is_locked("missing") is False


class TestConcurrentFailures:
    """Concurrent failures never lose an increment or double-lock."""

    def test_parallel_failures_lock_exactly_once(self, lockout, store, identity):
        barrier = threading.Barrier(20)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            barrier.wait()
            outcome = lockout.record_outcome(identity.id, False)
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = store.get_identity(identity.id)
        assert stored.failed_attempts == 5
        assert lockout.is_locked(identity.id)
        assert sum(1 for o in outcomes if not o.locked) == 4
        assert len(_events(store, identity, SecurityEventKind.ACCOUNT_LOCKED)) == 1
