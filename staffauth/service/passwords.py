"""Password hashing and password-strength policy."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import List, Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError

from staffauth.logging import get_logger
from staffauth.service.errors import PasswordPolicyViolation

logger = get_logger(__name__)

PASSWORD_MAX_LENGTH = 128
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "123456",
        "12345678",
        "123456789",
        "qwerty",
        "qwerty123",
        "abc123",
        "admin",
        "admin123",
        "letmein",
        "welcome",
        "welcome1",
        "monkey",
        "dragon",
        "iloveyou",
        "passw0rd",
    }
)


class PasswordHasher:
    """argon2id hashing with constant-time verification.

    Verification always returns a bool; malformed hashes are logged and
    treated as a mismatch.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        try:
            return self._hasher.verify(hashed, plaintext)
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
        except VerificationError:
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    def burn(self, plaintext: str) -> None:
        """Spend one verification's worth of work for unknown identities."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_urlsafe(16))
        self.verify(plaintext, self._dummy_hash)


@dataclass(frozen=True)
class PolicyViolation:
    rule: str
    message: str

    def as_dict(self) -> dict:
        return {"rule": self.rule, "message": self.message}


class PasswordPolicy:
    """Length, character-class, repetition and common-password checks."""

    def __init__(
        self,
        *,
        min_length: int = 8,
        max_length: int = PASSWORD_MAX_LENGTH,
        max_repeating: int = 2,
        require_uppercase: bool = True,
        require_lowercase: bool = True,
        require_digit: bool = True,
        require_special: bool = True,
        reject_common: bool = True,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.max_repeating = max_repeating
        self.require_uppercase = require_uppercase
        self.require_lowercase = require_lowercase
        self.require_digit = require_digit
        self.require_special = require_special
        self.reject_common = reject_common
        self._repeat_pattern = re.compile(r"(.)\1{%d,}" % max_repeating)

    def violations(self, password: str, *, email: Optional[str] = None) -> List[PolicyViolation]:
        found: List[PolicyViolation] = []
        if len(password) < self.min_length:
            found.append(
                PolicyViolation(
                    "min_length", f"must be at least {self.min_length} characters"
                )
            )
        if len(password) > self.max_length:
            found.append(
                PolicyViolation(
                    "max_length", f"must be at most {self.max_length} characters"
                )
            )
        if self.require_uppercase and not any(c.isupper() for c in password):
            found.append(PolicyViolation("uppercase", "must contain an uppercase letter"))
        if self.require_lowercase and not any(c.islower() for c in password):
            found.append(PolicyViolation("lowercase", "must contain a lowercase letter"))
        if self.require_digit and not any(c.isdigit() for c in password):
            found.append(PolicyViolation("digit", "must contain a digit"))
        if self.require_special and not any(c in SPECIAL_CHARACTERS for c in password):
            found.append(PolicyViolation("special", "must contain a special character"))
        if self._repeat_pattern.search(password):
            found.append(
                PolicyViolation(
                    "repeating",
                    f"must not repeat a character more than {self.max_repeating} times in a row",
                )
            )
        if self.reject_common and password.lower() in COMMON_PASSWORDS:
            found.append(PolicyViolation("common", "is too common"))
        if email:
            local_part = email.split("@", 1)[0].lower()
            if len(local_part) >= 3 and local_part in password.lower():
                found.append(
                    PolicyViolation("contains_email", "must not contain your email name")
                )
        return found

    def enforce(self, password: str, *, email: Optional[str] = None) -> None:
        found = self.violations(password, email=email)
        if found:
            raise PasswordPolicyViolation(
                [v.as_dict() for v in found], strength=self.strength(password)
            )

    def score(self, password: str) -> int:
        points = min(len(password), 20) * 2
        classes = [
            any(c.isupper() for c in password),
            any(c.islower() for c in password),
            any(c.isdigit() for c in password),
            any(c in SPECIAL_CHARACTERS for c in password),
        ]
        points += 15 * sum(classes)
        if self._repeat_pattern.search(password):
            points -= 20
        if password.lower() in COMMON_PASSWORDS:
            points -= 30
        return max(0, min(100, points))

    def strength(self, password: str) -> str:
        score = self.score(password)
        if score < 40:
            return "weak"
        if score < 60:
            return "medium"
        if score < 80:
            return "strong"
        return "very_strong"
