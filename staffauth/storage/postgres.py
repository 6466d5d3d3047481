from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from staffauth.logging import get_logger
from staffauth.storage.errors import ConstraintViolation, StorageUnavailable
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staff_identity (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'staff',
        name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_history (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES staff_identity(id),
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES staff_identity(id),
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_identity_idx ON refresh_token (identity_id)",
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        identity_id TEXT,
        kind TEXT NOT NULL,
        severity TEXT NOT NULL,
        description TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_event_tenant_idx ON security_event (tenant_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS login_history (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        identity_id TEXT,
        email TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        fail_reason TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_history_identity_idx ON login_history (identity_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_config (
        identity_id TEXT PRIMARY KEY REFERENCES staff_identity(id),
        secret TEXT NOT NULL,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_UPDATABLE_IDENTITY_COLUMNS = frozenset(
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

# Single-row conditional update: the row lock taken by UPDATE serializes
# concurrent failures for the same identity, and the SET clause only ever
# sees the committed counter. An elapsed lock restarts the count at 1.
_RECORD_FAILURE_SQL = """
UPDATE staff_identity
SET failed_attempts = CASE WHEN locked_until IS NOT NULL THEN 1 ELSE failed_attempts + 1 END,
    locked_until = CASE
        WHEN (CASE WHEN locked_until IS NOT NULL THEN 1 ELSE failed_attempts + 1 END) >= %(threshold)s
        THEN %(lock_until)s
        ELSE NULL
    END
WHERE id = %(identity_id)s
  AND (locked_until IS NULL OR locked_until <= %(now)s)
RETURNING failed_attempts, locked_until
"""


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the engine's tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            raise StorageUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _row_to_tenant(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=row["id"],
            name=row["name"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_identity(row: Dict[str, Any]) -> Identity:
        return Identity(
            id=row["id"],
            tenant_id=row["tenant_id"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row.get("role") or Role.STAFF.value),
            name=row.get("name"),
            is_active=bool(row.get("is_active", True)),
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=row.get("locked_until"),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=row["id"],
            identity_id=row["identity_id"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked=bool(row["revoked"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _row_to_event(row: Dict[str, Any]) -> SecurityEvent:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return SecurityEvent(
            id=row["id"],
            tenant_id=row["tenant_id"],
            identity_id=row.get("identity_id"),
            kind=SecurityEventKind(row["kind"]),
            severity=Severity(row["severity"]),
            description=row["description"],
            metadata=metadata,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_history(row: Dict[str, Any]) -> LoginHistoryRecord:
        return LoginHistoryRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            identity_id=row.get("identity_id"),
            email=row["email"],
            success=bool(row["success"]),
            fail_reason=row.get("fail_reason"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # tenants
    def create_tenant(
        self, name: str, *, tenant_id: Optional[str] = None, is_active: bool = True
    ) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO tenant (id, name, is_active) VALUES (%s, %s, %s) RETURNING *",
                    (tenant_id or new_id(), name, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"field": "id"})
        return self._row_to_tenant(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._row_to_tenant(row) if row else None

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, tenant_id),
            ).fetchone()
        return self._row_to_tenant(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO staff_identity (id, tenant_id, email, password_hash, role, name, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        tenant_id,
                        email.strip().lower(),
                        password_hash,
                        Role(role).value,
                        name,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"field": "tenant_id"})
        return self._row_to_identity(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_identity WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        unknown = set(fields) - _UPDATABLE_IDENTITY_COLUMNS
        if unknown:
            raise ValueError(f"cannot update identity fields: {sorted(unknown)}")
        if not fields:
            return self.get_identity(identity_id)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        params = [
            value.value if isinstance(value, Role) else value for value in fields.values()
        ]
        params.append(identity_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE staff_identity SET {assignments} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def record_login_failure(
        self,
        identity_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[FailureUpdate]:
        with self._connect() as conn:
            row = conn.execute(
                _RECORD_FAILURE_SQL,
                {
                    "identity_id": identity_id,
                    "threshold": threshold,
                    "lock_until": lock_until,
                    "now": now,
                },
            ).fetchone()
            if row:
                return FailureUpdate(
                    attempts=int(row["failed_attempts"]),
                    locked_until=row["locked_until"],
                    newly_locked=row["locked_until"] is not None,
                )
            current = conn.execute(
                "SELECT failed_attempts, locked_until FROM staff_identity WHERE id = %s",
                (identity_id,),
            ).fetchone()
        if not current:
            return None
        return FailureUpdate(
            attempts=int(current["failed_attempts"]),
            locked_until=current["locked_until"],
            newly_locked=False,
            already_locked=True,
        )

    def record_login_success(self, identity_id: str, now: datetime) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE staff_identity
                SET failed_attempts = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, identity_id),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def clear_lockout(self, identity_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE staff_identity SET failed_attempts = 0, locked_until = NULL
                WHERE id = %s RETURNING id
                """,
                (identity_id,),
            ).fetchone()
        return row is not None

    def count_locked_identities(self, tenant_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS locked FROM staff_identity
                WHERE tenant_id = %s AND locked_until > %s
                """,
                (tenant_id, now),
            ).fetchone()
        return int(row["locked"]) if row else 0

    # passwords
    def set_password_hash(
        self, identity_id: str, password_hash: str, *, history_depth: int = 0
    ) -> bool:
        with self._connect() as conn:
            current = conn.execute(
                "SELECT password_hash FROM staff_identity WHERE id = %s FOR UPDATE",
                (identity_id,),
            ).fetchone()
            if not current:
                return False
            if history_depth > 0:
                conn.execute(
                    "INSERT INTO password_history (id, identity_id, password_hash) VALUES (%s, %s, %s)",
                    (new_id(), identity_id, current["password_hash"]),
                )
                conn.execute(
                    """
                    DELETE FROM password_history
                    WHERE identity_id = %s AND id NOT IN (
                        SELECT id FROM password_history
                        WHERE identity_id = %s
                        ORDER BY created_at DESC
                        LIMIT %s
                    )
                    """,
                    (identity_id, identity_id, history_depth),
                )
            conn.execute(
                "UPDATE staff_identity SET password_hash = %s WHERE id = %s",
                (password_hash, identity_id),
            )
        return True

    def get_password_history(self, identity_id: str, limit: int) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT password_hash FROM password_history
                WHERE identity_id = %s ORDER BY created_at DESC LIMIT %s
                """,
                (identity_id, limit),
            ).fetchall()
        return [row["password_hash"] for row in rows]

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token
                        (id, identity_id, token_hash, expires_at, revoked, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.identity_id,
                        record.token_hash,
                        record.expires_at,
                        record.revoked,
                        record.ip_address,
                        record.user_agent,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE id = %s AND NOT revoked RETURNING id",
                (token_id,),
            ).fetchone()
        return row is not None

    def revoke_identity_refresh_tokens(self, identity_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE identity_id = %s AND NOT revoked",
                (identity_id,),
            )
            return cur.rowcount or 0

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE revoked OR expires_at <= %s", (now,)
            )
            return cur.rowcount or 0

    def list_active_refresh_tokens(
        self, tenant_id: str, now: datetime, *, identity_id: Optional[str] = None
    ) -> List[RefreshTokenRecord]:
        query = """
            SELECT t.* FROM refresh_token t
            JOIN staff_identity i ON i.id = t.identity_id
            WHERE i.tenant_id = %s AND NOT t.revoked AND t.expires_at > %s
        """
        params: List[Any] = [tenant_id, now]
        if identity_id:
            query += " AND t.identity_id = %s"
            params.append(identity_id)
        query += " ORDER BY t.created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    # security events (append-only)
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event
                    (id, tenant_id, identity_id, kind, severity, description, metadata,
                     ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s)
                """,
                (
                    event.id,
                    event.tenant_id,
                    event.identity_id,
                    event.kind.value,
                    event.severity.value,
                    event.description,
                    json.dumps(event.metadata or {}),
                    event.ip_address,
                    event.user_agent,
                    event.created_at,
                ),
            )
        return event

    @staticmethod
    def _event_where(criteria: EventFilter) -> Tuple[str, List[Any]]:
        clauses = ["tenant_id = %s"]
        params: List[Any] = [criteria.tenant_id]
        if criteria.identity_id:
            clauses.append("identity_id = %s")
            params.append(criteria.identity_id)
        if criteria.kind:
            clauses.append("kind = %s")
            params.append(criteria.kind.value)
        if criteria.severity:
            clauses.append("severity = %s")
            params.append(criteria.severity.value)
        if criteria.since:
            clauses.append("created_at >= %s")
            params.append(criteria.since)
        if criteria.until:
            clauses.append("created_at <= %s")
            params.append(criteria.until)
        return " AND ".join(clauses), params

    def list_security_events(
        self, criteria: EventFilter, *, offset: int, limit: int
    ) -> Tuple[List[SecurityEvent], int]:
        where, params = self._event_where(criteria)
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS total FROM security_event WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT * FROM security_event WHERE {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_event(row) for row in rows], int(total["total"])

    def security_event_breakdown(
        self, tenant_id: str, since: datetime
    ) -> List[Tuple[SecurityEventKind, Severity, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT kind, severity, COUNT(*) AS n FROM security_event
                WHERE tenant_id = %s AND created_at >= %s
                GROUP BY kind, severity
                """,
                (tenant_id, since),
            ).fetchall()
        return [
            (SecurityEventKind(row["kind"]), Severity(row["severity"]), int(row["n"]))
            for row in rows
        ]

    # login history (append-only)
    def append_login_history(self, record: LoginHistoryRecord) -> LoginHistoryRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_history
                    (id, tenant_id, identity_id, email, success, fail_reason,
                     ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.tenant_id,
                    record.identity_id,
                    record.email,
                    record.success,
                    record.fail_reason,
                    record.ip_address,
                    record.user_agent,
                    record.created_at,
                ),
            )
        return record

    @staticmethod
    def _history_where(criteria: LoginHistoryFilter) -> Tuple[str, List[Any]]:
        clauses = ["tenant_id = %s"]
        params: List[Any] = [criteria.tenant_id]
        if criteria.identity_id:
            clauses.append("identity_id = %s")
            params.append(criteria.identity_id)
        if criteria.success is not None:
            clauses.append("success = %s")
            params.append(criteria.success)
        if criteria.since:
            clauses.append("created_at >= %s")
            params.append(criteria.since)
        if criteria.until:
            clauses.append("created_at <= %s")
            params.append(criteria.until)
        return " AND ".join(clauses), params

    def list_login_history(
        self, criteria: LoginHistoryFilter, *, offset: int, limit: int
    ) -> Tuple[List[LoginHistoryRecord], int]:
        where, params = self._history_where(criteria)
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS total FROM login_history WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT * FROM login_history WHERE {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_history(row) for row in rows], int(total["total"])

    def list_successful_origins(self, identity_id: str, since: datetime) -> List[Origin]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT ip_address, user_agent FROM login_history
                WHERE identity_id = %s AND success AND created_at >= %s
                """,
                (identity_id, since),
            ).fetchall()
        return [Origin(ip_address=row["ip_address"], user_agent=row["user_agent"]) for row in rows]

    def count_login_attempts(self, tenant_id: str, since: datetime) -> Tuple[int, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total, COUNT(*) FILTER (WHERE NOT success) AS failed
                FROM login_history WHERE tenant_id = %s AND created_at >= %s
                """,
                (tenant_id, since),
            ).fetchone()
        return int(row["total"]), int(row["failed"])

    # two-factor
    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO two_factor_config (identity_id, secret, backup_code_hashes, enabled)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                SET secret = EXCLUDED.secret,
                    backup_code_hashes = EXCLUDED.backup_code_hashes,
                    enabled = EXCLUDED.enabled
                """,
                (config.identity_id, config.secret, list(config.backup_code_hashes), config.enabled),
            )
            conn.execute(
                "UPDATE staff_identity SET two_factor_enabled = %s WHERE id = %s",
                (config.enabled, config.identity_id),
            )
        return config

    def get_two_factor(self, identity_id: str) -> Optional[TwoFactorConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_config WHERE identity_id = %s", (identity_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorConfig(
            identity_id=row["identity_id"],
            secret=row["secret"],
            backup_code_hashes=list(row.get("backup_code_hashes") or []),
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
        )

    def delete_two_factor(self, identity_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM two_factor_config WHERE identity_id = %s", (identity_id,)
            )
            conn.execute(
                "UPDATE staff_identity SET two_factor_enabled = FALSE WHERE id = %s",
                (identity_id,),
            )
            return bool(cur.rowcount)

    def consume_backup_code(self, identity_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_config
                SET backup_code_hashes = array_remove(backup_code_hashes, %s)
                WHERE identity_id = %s AND %s = ANY(backup_code_hashes)
                RETURNING identity_id
                """,
                (code_hash, identity_id, code_hash),
            ).fetchone()
        return row is not None
