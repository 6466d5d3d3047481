"""Append-only security event log and login history.

Writes never raise: an audit failure is logged locally and the operation
being audited carries on with its own outcome.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from staffauth.logging import get_logger
from staffauth.storage.models import (
    UNRESOLVED_TENANT,
    EventFilter,
    Identity,
    LoginHistoryFilter,
    LoginHistoryRecord,
    Origin,
    Page,
    Resolved,
    SecurityEvent,
    SecurityEventKind,
    Severity,
    TenantResolution,
    Unresolved,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(1, int(page))
    limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
    return page, limit


class SecurityAuditLog:
    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def resolve_tenant(self, identity_id: Optional[str]) -> TenantResolution:
        if not identity_id:
            return Unresolved("identity_missing")
        try:
            identity = self.store.get_identity(identity_id)
        except Exception as exc:
            logger.error("audit_tenant_lookup_failed", identity_id=identity_id, error=str(exc))
            return Unresolved("lookup_failed")
        if not identity:
            return Unresolved("identity_not_found")
        return Resolved(identity.tenant_id)

    def record(
        self,
        identity_id: Optional[str],
        kind: SecurityEventKind,
        description: str,
        severity: Severity = Severity.INFO,
        metadata: Optional[Dict[str, Any]] = None,
        origin: Optional[Origin] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> Optional[SecurityEvent]:
        """Append a security event; returns None if it had to be dropped."""
        resolution: TenantResolution = (
            Resolved(tenant_id) if tenant_id else self.resolve_tenant(identity_id)
        )
        if isinstance(resolution, Unresolved):
            logger.error(
                "security_event_dropped",
                identity_id=identity_id,
                kind=kind.value,
                reason=resolution.reason,
            )
            return None
        origin = origin or Origin()
        event = SecurityEvent(
            id=new_id(),
            tenant_id=resolution.tenant_id,
            identity_id=identity_id,
            kind=kind,
            severity=severity,
            description=description,
            metadata=dict(metadata or {}),
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            created_at=self._clock(),
        )
        try:
            self.store.append_security_event(event)
        except Exception as exc:
            logger.error(
                "security_event_write_failed",
                identity_id=identity_id,
                kind=kind.value,
                error=str(exc),
            )
            return None
        log_fn = logger.warning if severity != Severity.INFO else logger.info
        log_fn(
            "security_event",
            kind=kind.value,
            severity=severity.value,
            identity_id=identity_id,
            tenant_id=event.tenant_id,
        )
        return event

    def record_login_attempt(
        self,
        email: str,
        success: bool,
        *,
        identity: Optional[Identity] = None,
        fail_reason: Optional[str] = None,
        origin: Optional[Origin] = None,
    ) -> Optional[LoginHistoryRecord]:
        if identity is None and email:
            try:
                identity = self.store.get_identity_by_email(email)
            except Exception as exc:
                logger.error("login_history_lookup_failed", error=str(exc))
        resolution: TenantResolution = (
            Resolved(identity.tenant_id) if identity else Unresolved("identity_not_found")
        )
        tenant_id = (
            resolution.tenant_id if isinstance(resolution, Resolved) else UNRESOLVED_TENANT
        )
        origin = origin or Origin()
        record = LoginHistoryRecord(
            id=new_id(),
            tenant_id=tenant_id,
            identity_id=identity.id if identity else None,
            email=(email or "").strip().lower(),
            success=success,
            fail_reason=fail_reason,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            created_at=self._clock(),
        )
        try:
            self.store.append_login_history(record)
        except Exception as exc:
            logger.error("login_history_write_failed", error=str(exc), success=success)
            return None
        return record

    # read API
    def list_events(
        self,
        tenant_id: str,
        *,
        identity_id: Optional[str] = None,
        kind: Optional[SecurityEventKind] = None,
        severity: Optional[Severity] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SecurityEvent]:
        page, limit = _page_bounds(page, limit)
        criteria = EventFilter(
            tenant_id=tenant_id,
            identity_id=identity_id,
            kind=kind,
            severity=severity,
            since=since,
            until=until,
        )
        items, total = self.store.list_security_events(
            criteria, offset=(page - 1) * limit, limit=limit
        )
        return Page(items=items, total=total, page=page, limit=limit)

    def list_login_history(
        self,
        tenant_id: str,
        *,
        identity_id: Optional[str] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[LoginHistoryRecord]:
        page, limit = _page_bounds(page, limit)
        criteria = LoginHistoryFilter(
            tenant_id=tenant_id,
            identity_id=identity_id,
            success=success,
            since=since,
            until=until,
        )
        items, total = self.store.list_login_history(
            criteria, offset=(page - 1) * limit, limit=limit
        )
        return Page(items=items, total=total, page=page, limit=limit)

    def security_stats(self, tenant_id: str, days: int = 30) -> Dict[str, Any]:
        now = self._clock()
        since = now - timedelta(days=days)
        total_logins, failed_logins = self.store.count_login_attempts(tenant_id, since)
        breakdown = self.store.security_event_breakdown(tenant_id, since)
        success_rate = (
            round((total_logins - failed_logins) / total_logins * 100, 2)
            if total_logins
            else 0.0
        )
        return {
            "period_days": days,
            "total_logins": total_logins,
            "failed_logins": failed_logins,
            "success_rate": success_rate,
            "locked_accounts": self.store.count_locked_identities(tenant_id, now),
            "security_events": sum(count for _, _, count in breakdown),
            "suspicious_logins": sum(
                count
                for kind, _, count in breakdown
                if kind == SecurityEventKind.SUSPICIOUS_LOGIN
            ),
        }

    def security_report(self, tenant_id: str, days: int = 30) -> Dict[str, Any]:
        stats = self.security_stats(tenant_id, days)
        since = self._clock() - timedelta(days=days)
        by_kind: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for kind, severity, count in self.store.security_event_breakdown(tenant_id, since):
            by_kind[kind.value] = by_kind.get(kind.value, 0) + count
            by_severity[severity.value] = by_severity.get(severity.value, 0) + count
        return {
            "stats": stats,
            "events_by_kind": by_kind,
            "events_by_severity": by_severity,
            "recommendations": _recommendations(stats, by_kind),
        }


def _recommendations(stats: Dict[str, Any], by_kind: Dict[str, int]) -> List[str]:
    advice: List[str] = []
    if stats["total_logins"] and stats["success_rate"] < 80:
        advice.append(
            "Login success rate is below 80%; review failed attempts for credential stuffing."
        )
    if stats["locked_accounts"] > 0:
        advice.append(
            f"{stats['locked_accounts']} account(s) are locked; confirm with the owners before unlocking."
        )
    if stats["suspicious_logins"] > 0:
        advice.append(
            "Suspicious logins were detected; ask affected staff to confirm recent sign-ins."
        )
    if by_kind.get(SecurityEventKind.INVALID_2FA_ATTEMPT.value, 0) > 0:
        advice.append("Invalid two-factor codes were submitted; check for phished passwords.")
    if by_kind.get(SecurityEventKind.TWO_FA_ENABLED.value, 0) == 0:
        advice.append("No staff enabled two-factor authentication in this period; encourage enrolment.")
    return advice
