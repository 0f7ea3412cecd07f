from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error / weak_password / password_reused / account_locked (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentials(AuthenticationError):
    """Email/password pair did not match. The message never says which."""

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class AccountInactive(AuthenticationError):
    def __init__(self, status: str) -> None:
        super().__init__("Account is not active", detail={"status": status})
        self.status = status


class TokenRejected(AuthenticationError):
    """A bearer token or its session failed validation.

    Clients always see "Invalid token"; ``reason`` identifies the failing check.
    """

    reason: str = "invalid_token"

    def __init__(self, reason: Optional[str] = None, message: str = "Invalid token") -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(message, detail={"reason": self.reason})


class InvalidSignature(TokenRejected):
    reason = "invalid_signature"


class TokenExpired(TokenRejected):
    reason = "token_expired"


class InvalidOrExpiredToken(AuthenticationError):
    """Refresh or reset token unknown, revoked, already used, or expired."""

    def __init__(
        self,
        message: str = "Invalid or expired token",
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, status_code=status_code)


class AccountLocked(ServiceError):
    status_code = 400
    error_code = "account_locked"

    def __init__(self, locked_until: datetime) -> None:
        super().__init__(
            f"Account is locked until {locked_until.isoformat()}",
            detail={"locked_until": locked_until.isoformat()},
        )
        self.locked_until = locked_until


class WeakPassword(ValidationError):
    error_code = "weak_password"

    def __init__(self, violations: Sequence[str]) -> None:
        super().__init__(
            "Password does not meet strength requirements",
            detail={"violations": list(violations)},
        )
        self.violations = list(violations)


class PasswordReused(ValidationError):
    error_code = "password_reused"

    def __init__(self, history_size: int) -> None:
        super().__init__(
            f"Password was used recently; choose one not among the last {history_size}",
            detail={"history_size": history_size},
        )


class EmailAlreadyExists(ConflictError):
    def __init__(self) -> None:
        super().__init__("Email already exists", detail={"field": "email"})


class ScopeForbidden(ForbiddenError):
    """Caller is authenticated but the target scope is outside its assignment."""

    def __init__(self, message: str, *, kind: Optional[str] = None, scope_id: Optional[str] = None) -> None:
        detail = {}
        if kind:
            detail["scope"] = kind
        if scope_id:
            detail["scope_id"] = scope_id
        super().__init__(message, detail=detail)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentials",
    "AccountInactive",
    "TokenRejected",
    "InvalidSignature",
    "TokenExpired",
    "InvalidOrExpiredToken",
    "AccountLocked",
    "WeakPassword",
    "PasswordReused",
    "EmailAlreadyExists",
    "ScopeForbidden",
]
