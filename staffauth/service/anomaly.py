from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from staffauth.logging import get_logger
from staffauth.service.audit import SecurityAuditLog
from staffauth.storage.models import Origin, SecurityEventKind, Severity, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class SuspicionResult:
    suspicious: bool
    new_address: bool = False
    new_client: bool = False


NOT_SUSPICIOUS = SuspicionResult(suspicious=False)


class SuspiciousLoginDetector:
    """Flags logins whose address or client signature is new for the identity.

    Only successful logins inside the trailing window count as known-good.
    The result annotates a login; it never blocks one.
    """

    def __init__(
        self,
        store,
        audit: SecurityAuditLog,
        *,
        window: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.window = window
        self._clock = clock

    def evaluate(
        self,
        identity_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        tenant_id: Optional[str] = None,
    ) -> SuspicionResult:
        try:
            history = self.store.list_successful_origins(
                identity_id, self._clock() - self.window
            )
        except Exception as exc:
            logger.error("suspicious_login_lookup_failed", identity_id=identity_id, error=str(exc))
            return NOT_SUSPICIOUS

        known_addresses = {o.ip_address for o in history if o.ip_address}
        known_clients = {o.user_agent for o in history if o.user_agent}
        new_address = bool(ip_address) and ip_address not in known_addresses
        new_client = bool(user_agent) and user_agent not in known_clients
        if not (new_address or new_client):
            return NOT_SUSPICIOUS

        result = SuspicionResult(suspicious=True, new_address=new_address, new_client=new_client)
        self.audit.record(
            identity_id,
            SecurityEventKind.SUSPICIOUS_LOGIN,
            "Login from an unrecognised address or client",
            Severity.WARNING,
            metadata={"new_address": new_address, "new_client": new_client},
            origin=Origin(ip_address=ip_address, user_agent=user_agent),
            tenant_id=tenant_id,
        )
        return result

    def is_suspicious(
        self, identity_id: str, ip_address: Optional[str], user_agent: Optional[str]
    ) -> bool:
        return self.evaluate(identity_id, ip_address, user_agent).suspicious
