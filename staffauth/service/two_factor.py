"""TOTP (RFC 6238) second factor with one-time backup codes.

TOTP secrets are Fernet-encrypted before they reach the store and backup
codes are stored only as SHA-256 digests.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken

from staffauth.logging import get_logger
from staffauth.service.errors import NotFoundError, ValidationError
from staffauth.storage.models import TwoFactorConfig, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
# Unambiguous characters for codes people type by hand
_BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 8


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    otpauth_uri: str


class TwoFactorService:
    def __init__(
        self,
        store,
        *,
        encryption_key: str,
        issuer: str = "staffauth",
        window: int = 1,
        backup_code_count: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.window = window
        self.backup_code_count = backup_code_count
        self._clock = clock
        self._cipher = Fernet(self._derive_cipher_key(encryption_key))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, token: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("totp_secret_decrypt_failed")
            return None

    # TOTP primitives
    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")

    def provisioning_uri(self, secret: str, account: str) -> str:
        label = quote(f"{self.issuer}:{account}")
        return (
            f"otpauth://totp/{label}?secret={secret}&issuer={quote(self.issuer)}"
            f"&digits={TOTP_DIGITS}&period={TOTP_INTERVAL_SECONDS}"
        )

    @staticmethod
    def generate_totp(
        secret: str,
        timestamp: float,
        *,
        interval: int = TOTP_INTERVAL_SECONDS,
        digits: int = TOTP_DIGITS,
    ) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except Exception:
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)

    def verify_totp(self, secret: str, code: str, *, at: Optional[datetime] = None) -> bool:
        if not code:
            return False
        code = code.strip().replace(" ", "")
        now = (at or self._clock()).timestamp()
        for offset in range(-self.window, self.window + 1):
            generated = self.generate_totp(secret, now + offset * TOTP_INTERVAL_SECONDS)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    # backup codes
    def generate_backup_codes(self) -> List[str]:
        return [
            "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(self.backup_code_count)
        ]

    @staticmethod
    def hash_backup_code(code: str) -> str:
        normalized = code.strip().replace("-", "").replace(" ", "").upper()
        return hashlib.sha256(normalized.encode()).hexdigest()

    # lifecycle
    def begin_setup(self, identity_id: str, account: str) -> TwoFactorSetup:
        existing = self.store.get_two_factor(identity_id)
        if existing and existing.enabled:
            raise ValidationError("two-factor authentication is already enabled")
        secret = self.generate_secret()
        self.store.save_two_factor(
            TwoFactorConfig(identity_id=identity_id, secret=self._encrypt(secret), enabled=False)
        )
        return TwoFactorSetup(secret=secret, otpauth_uri=self.provisioning_uri(secret, account))

    def enable(self, identity_id: str, code: str) -> List[str]:
        """Confirm a pending setup with a live code; returns fresh backup codes."""
        config = self.store.get_two_factor(identity_id)
        if not config:
            raise NotFoundError("two-factor setup has not been started")
        if config.enabled:
            raise ValidationError("two-factor authentication is already enabled")
        secret = self._decrypt(config.secret)
        if not secret or not self.verify_totp(secret, code):
            raise ValidationError("invalid two-factor code")
        codes = self.generate_backup_codes()
        config.backup_code_hashes = [self.hash_backup_code(c) for c in codes]
        config.enabled = True
        self.store.save_two_factor(config)
        return codes

    def verify_login_code(
        self,
        identity_id: str,
        *,
        totp_code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> Optional[str]:
        """Return ``"totp"`` or ``"backup"`` for the factor that verified, else None.

        A matching backup code is consumed atomically and cannot be replayed.
        """
        config = self.store.get_two_factor(identity_id)
        if not config or not config.enabled:
            return None
        if totp_code:
            secret = self._decrypt(config.secret)
            if secret and self.verify_totp(secret, totp_code):
                return "totp"
        if backup_code:
            if self.store.consume_backup_code(identity_id, self.hash_backup_code(backup_code)):
                return "backup"
        return None

    def remaining_backup_codes(self, identity_id: str) -> int:
        config = self.store.get_two_factor(identity_id)
        return len(config.backup_code_hashes) if config else 0

    def regenerate_backup_codes(self, identity_id: str) -> List[str]:
        config = self.store.get_two_factor(identity_id)
        if not config or not config.enabled:
            raise ValidationError("two-factor authentication is not enabled")
        codes = self.generate_backup_codes()
        config.backup_code_hashes = [self.hash_backup_code(c) for c in codes]
        self.store.save_two_factor(config)
        return codes

    def disable(self, identity_id: str) -> bool:
        return self.store.delete_two_factor(identity_id)
