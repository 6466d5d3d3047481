"""Access and refresh token issuance, verification and revocation.

Access tokens are HS256 JWTs verified without a database round-trip. Refresh
tokens are opaque hex secrets; only their SHA-256 digest is persisted, so a
leaked table cannot be replayed against the refresh endpoint.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from staffauth.config import Settings
from staffauth.logging import get_logger
from staffauth.storage.models import (
    Identity,
    IdentitySnapshot,
    Origin,
    RefreshTokenRecord,
    Role,
    new_id,
    utcnow,
)
from staffauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessClaims:
    identity_id: str
    tenant_id: str
    role: Role
    email: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class TokenService:
    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    # access tokens
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(),
            signing_input.encode("utf-8", "surrogatepass"),
            hashlib.sha256,
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the verified payload, or None when any check fails."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so "none" or asymmetric headers never verify
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception:
            logger.debug("jwt_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        now = self._clock()
        if exp_ts <= (now - self._leeway).timestamp():
            return None
        return payload

    def issue_access_token(
        self, identity_id: str, tenant_id: str, role: Role | str, email: str
    ) -> str:
        now = self._clock()
        expires_at = now + timedelta(seconds=self.access_ttl_seconds)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity_id,
            "identityId": identity_id,
            "email": email,
            "tenantId": tenant_id,
            "role": Role(role).value,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": ACCESS_TOKEN_TYPE,
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> Optional[AccessClaims]:
        """Return the token's claims, or None for every kind of failure."""
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return None
        try:
            return AccessClaims(
                identity_id=str(payload["identityId"]),
                tenant_id=str(payload["tenantId"]),
                role=Role(payload["role"]),
                email=str(payload["email"]),
                jti=str(payload["jti"]),
                issued_at=datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            logger.debug("jwt_claims_incomplete")
            return None

    # refresh tokens
    @staticmethod
    def hash_refresh_secret(secret: str) -> str:
        return hashlib.sha256(secret.encode()).hexdigest()

    def issue_refresh_token(self, identity_id: str, origin: Optional[Origin] = None) -> str:
        origin = origin or Origin()
        secret = secrets.token_hex(self.settings.refresh_token_bytes)
        now = self._clock()
        record = RefreshTokenRecord(
            id=new_id(),
            identity_id=identity_id,
            token_hash=self.hash_refresh_secret(secret),
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
        )
        self.store.insert_refresh_token(record)
        logger.info("refresh_token_issued", identity_id=identity_id, session_id=record.id)
        return secret

    def issue_token_pair(self, identity: Identity | IdentitySnapshot, origin: Optional[Origin] = None) -> TokenPair:
        access_token = self.issue_access_token(
            identity.id, identity.tenant_id, identity.role, identity.email
        )
        refresh_token = self.issue_refresh_token(identity.id, origin)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
        )

    def find_refresh_token(self, secret: str) -> Optional[RefreshTokenRecord]:
        if not secret:
            return None
        return self.store.get_refresh_token_by_hash(self.hash_refresh_secret(secret))

    def verify_and_consume_refresh_token(self, secret: str) -> Optional[IdentitySnapshot]:
        """Validate a refresh secret and return the identity it is bound to.

        Revoked, expired and orphaned tokens are revoked in storage before the
        failure is reported. Success leaves the token usable; rotation is the
        caller's decision.
        """
        record = self.find_refresh_token(secret)
        if not record:
            logger.info("refresh_token_unknown")
            return None
        if record.revoked:
            logger.warning("refresh_token_reuse", session_id=record.id, identity_id=record.identity_id)
            return None
        if record.is_expired(self._clock()):
            self.store.revoke_refresh_token(record.id)
            logger.info("refresh_token_expired", session_id=record.id)
            return None
        identity = self.store.get_identity(record.identity_id)
        if not identity or not identity.is_active:
            self.store.revoke_refresh_token(record.id)
            logger.warning(
                "refresh_token_identity_inactive",
                session_id=record.id,
                identity_id=record.identity_id,
            )
            return None
        return IdentitySnapshot.of(identity)

    def revoke(self, secret: str) -> bool:
        record = self.find_refresh_token(secret)
        if not record:
            return False
        return self.store.revoke_refresh_token(record.id)

    def revoke_session(self, session_id: str) -> bool:
        return self.store.revoke_refresh_token(session_id)

    def revoke_all(self, identity_id: str) -> int:
        revoked = self.store.revoke_identity_refresh_tokens(identity_id)
        logger.info("refresh_tokens_revoked", identity_id=identity_id, count=revoked)
        return revoked

    def sweep_expired(self) -> int:
        return self.store.delete_expired_refresh_tokens(self._clock())

    def list_active_sessions(
        self, tenant_id: str, *, identity_id: Optional[str] = None
    ) -> List[RefreshTokenRecord]:
        return self.store.list_active_refresh_tokens(
            tenant_id, self._clock(), identity_id=identity_id
        )


class AccessTokenDenylist:
    """Short-lived denylist of access token ids.

    Redis-backed when a cache is configured, otherwise an in-process map of
    jti to expiry. Entries never outlive the token they block.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    async def add(self, jti: str, expires_at: datetime) -> None:
        ttl = int((expires_at - self._clock()).total_seconds())
        if ttl <= 0:
            return
        if self.cache:
            try:
                await self.cache.denylist_access_token(jti, ttl)
                return
            except Exception as exc:
                logger.warning("access_token_denylist_failed", jti=jti, error=str(exc))
        with self._lock:
            self._entries[jti] = expires_at

    async def contains(self, jti: str) -> bool:
        if self.cache:
            try:
                if await self.cache.is_access_token_denylisted(jti):
                    return True
            except Exception as exc:
                # Fail open: the signature and expiry checks still apply
                logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                self._entries.pop(jti, None)
                return False
            return True

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [jti for jti, exp in self._entries.items() if exp <= now]
            for jti in expired:
                del self._entries[jti]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
