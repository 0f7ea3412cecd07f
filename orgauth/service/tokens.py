from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from orgauth.config import Settings
from orgauth.logging import get_logger
from orgauth.service.errors import InvalidSignature, TokenExpired, TokenRejected
from orgauth.storage.models import Role, Session, User

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _signature(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def token_id(token: str) -> str:
    """Stable identifier for a compact token, used as the revocation key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AccessClaims:
    """Decoded access-token claims; attached to the request once authenticated."""

    sub: str
    email: str
    role: Role
    organization_id: str
    session_id: str
    iat: int
    exp: int
    assigned_branches: List[str] = field(default_factory=list)
    assigned_departments: List[str] = field(default_factory=list)

    @property
    def user_id(self) -> str:
        return self.sub

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sub": self.sub,
            "email": self.email,
            "role": self.role.value,
            "organizationId": self.organization_id,
            "assignedBranches": list(self.assigned_branches),
            "assignedDepartments": list(self.assigned_departments),
            "sessionId": self.session_id,
            "iat": self.iat,
            "exp": self.exp,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccessClaims":
        try:
            return cls(
                sub=str(payload["sub"]),
                email=str(payload["email"]),
                role=Role(payload["role"]),
                organization_id=str(payload["organizationId"]),
                session_id=str(payload["sessionId"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                assigned_branches=[str(b) for b in payload.get("assignedBranches") or []],
                assigned_departments=[
                    str(d) for d in payload.get("assignedDepartments") or []
                ],
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("access_claims_invalid", error=str(exc))
            raise TokenRejected("invalid_claims") from exc


class TokenService:
    """Signs and verifies compact HS256 tokens.

    Access and refresh tokens use separate secrets. Nothing here touches the
    session or revocation stores.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl_seconds: int = 24 * 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        leeway_seconds: int = 0,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_days * 24 * 60 * 60,
        )

    def sign(
        self,
        claims: Dict[str, Any],
        secret: str,
        ttl_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {**claims, "iat": issued_at, "exp": issued_at + int(ttl_seconds)}
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_signature(secret, signing_input)}"

    def verify(
        self, token: str, secret: str, *, now: Optional[float] = None
    ) -> Dict[str, Any]:
        # Compact tokens are base64url and dots only
        if not isinstance(token, str) or not token.isascii():
            raise InvalidSignature()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignature()

        # Only HS256 is accepted; anything else is an algorithm-confusion attempt
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidSignature()
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidSignature()

        expected_sig = _signature(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            raise InvalidSignature()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignature()
        if not isinstance(payload, dict):
            raise InvalidSignature()

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenRejected("invalid_claims")
        current = now if now is not None else time.time()
        if exp_ts <= current - self.leeway_seconds:
            raise TokenExpired()
        return payload

    def issue_access_token(
        self, user: User, session: Session, *, now: Optional[float] = None
    ) -> Tuple[str, AccessClaims]:
        claims = {
            "sub": user.id,
            "email": user.email,
            "role": Role(user.role).value,
            "organizationId": user.organization_id,
            "assignedBranches": list(user.assigned_branches),
            "assignedDepartments": list(user.assigned_departments),
            "sessionId": session.id,
        }
        token = self.sign(claims, self._access_secret, self.access_ttl_seconds, now=now)
        payload = self.verify(token, self._access_secret, now=now)
        return token, AccessClaims.from_payload(payload)

    def verify_access_token(
        self, token: str, *, now: Optional[float] = None
    ) -> AccessClaims:
        return AccessClaims.from_payload(self.verify(token, self._access_secret, now=now))

    def issue_refresh_token(
        self, user_id: str, *, now: Optional[float] = None
    ) -> Tuple[str, datetime]:
        # jti keeps two refresh tokens minted in the same second distinct
        token = self.sign(
            {"sub": user_id, "jti": secrets.token_hex(16)},
            self._refresh_secret,
            self.refresh_ttl_seconds,
            now=now,
        )
        exp = self.verify(token, self._refresh_secret, now=now)["exp"]
        return token, datetime.fromtimestamp(exp, tz=timezone.utc)

    def verify_refresh_token(
        self, token: str, *, now: Optional[float] = None
    ) -> Dict[str, Any]:
        payload = self.verify(token, self._refresh_secret, now=now)
        if not payload.get("sub"):
            raise TokenRejected("invalid_claims")
        return payload

    @staticmethod
    def remaining_seconds(exp: int, *, now: Optional[float] = None) -> int:
        current = now if now is not None else time.time()
        return max(0, int(exp - current))


__all__ = ["AccessClaims", "TokenService", "token_id"]
