from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from staffauth.logging import get_logger
from staffauth.service.audit import SecurityAuditLog
from staffauth.service.errors import NotFoundError
from staffauth.storage.models import Origin, SecurityEventKind, Severity, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutOutcome:
    locked: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None


class LockoutPolicy:
    """Consecutive-failure counter with a time-boxed lock per identity.

    The counter lives on the identity row and is only changed through the
    store's atomic helpers.
    """

    def __init__(
        self,
        store,
        audit: SecurityAuditLog,
        *,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.threshold = threshold
        self.lock_duration = lock_duration
        self._clock = clock

    def is_locked(self, identity_id: str) -> bool:
        identity = self.store.get_identity(identity_id)
        return bool(identity and identity.is_locked(self._clock()))

    def record_outcome(
        self, identity_id: str, success: bool, *, origin: Optional[Origin] = None
    ) -> LockoutOutcome:
        now = self._clock()
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("identity not found")
        if identity.is_locked(now):
            return LockoutOutcome(
                locked=True, attempts_remaining=0, locked_until=identity.locked_until
            )

        if success:
            self.store.record_login_success(identity_id, now)
            return LockoutOutcome(locked=False, attempts_remaining=self.threshold)

        update = self.store.record_login_failure(
            identity_id,
            threshold=self.threshold,
            lock_until=now + self.lock_duration,
            now=now,
        )
        if update is None:
            raise NotFoundError("identity not found")
        if update.already_locked:
            # Another request locked the identity between our read and write
            return LockoutOutcome(
                locked=True, attempts_remaining=0, locked_until=update.locked_until
            )
        if update.newly_locked:
            logger.warning(
                "account_locked",
                identity_id=identity_id,
                attempts=update.attempts,
                locked_until=update.locked_until.isoformat() if update.locked_until else None,
            )
            self.audit.record(
                identity_id,
                SecurityEventKind.ACCOUNT_LOCKED,
                f"Account locked after {update.attempts} failed login attempts",
                Severity.CRITICAL,
                metadata={
                    "attempts": update.attempts,
                    "locked_until": update.locked_until.isoformat()
                    if update.locked_until
                    else None,
                },
                origin=origin,
                tenant_id=identity.tenant_id,
            )
            return LockoutOutcome(
                locked=True, attempts_remaining=0, locked_until=update.locked_until
            )
        return LockoutOutcome(
            locked=False,
            attempts_remaining=max(0, self.threshold - update.attempts),
        )

    def unlock(
        self,
        identity_id: str,
        *,
        unlocked_by: Optional[str] = None,
        origin: Optional[Origin] = None,
    ) -> bool:
        """Clear the counter and any lock regardless of elapsed time."""
        if not self.store.clear_lockout(identity_id):
            return False
        logger.info("account_unlocked", identity_id=identity_id, unlocked_by=unlocked_by)
        self.audit.record(
            identity_id,
            SecurityEventKind.ACCOUNT_UNLOCKED,
            "Account unlocked by administrator",
            Severity.INFO,
            metadata={"unlocked_by": unlocked_by} if unlocked_by else None,
            origin=origin,
        )
        return True
