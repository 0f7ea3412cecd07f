from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from orgauth.config import Settings
from orgauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
SPECIAL_CHARACTERS = "@$!%*?&"
RESET_TOKEN_BYTES = 32


@dataclass(frozen=True)
class StrengthReport:
    valid: bool
    violations: List[str] = field(default_factory=list)


def check_strength(password: str) -> StrengthReport:
    """Evaluate every strength rule so callers can show all failures at once."""
    violations: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        violations.append(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    if not any(c.isupper() for c in password):
        violations.append("Password must contain at least one uppercase letter")
    if not any(c.islower() for c in password):
        violations.append("Password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in password):
        violations.append("Password must contain at least one number")
    if not any(c in SPECIAL_CHARACTERS for c in password):
        violations.append(
            f"Password must contain at least one special character ({SPECIAL_CHARACTERS})"
        )
    return StrengthReport(valid=not violations, violations=violations)


def generate_opaque_token() -> str:
    """Random URL-safe token used for password resets."""
    return secrets.token_urlsafe(RESET_TOKEN_BYTES)


def hash_token(token: str) -> str:
    """One-way digest of an opaque token; only the digest is ever persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PasswordVerifier:
    """argon2id hashing plus the strength and history rules for passwords."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordVerifier":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
        except VerificationError:
            return False

    def verify_dummy(self, password: str) -> None:
        """Burn one verification so unknown emails take as long as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(password, self._dummy_hash)

    def in_history(self, password: str, past_hashes: Iterable[str]) -> bool:
        return any(self.verify(password, past) for past in past_hashes if past)

    @staticmethod
    def strength(password: str) -> StrengthReport:
        return check_strength(password)


__all__ = [
    "MIN_PASSWORD_LENGTH",
    "SPECIAL_CHARACTERS",
    "StrengthReport",
    "PasswordVerifier",
    "check_strength",
    "generate_opaque_token",
    "hash_token",
]
