from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Set

from orgauth.logging import get_logger
from orgauth.storage.models import AuditEvent, utcnow

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    USER_REGISTERED = "USER_REGISTERED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_SUCCESS = "PASSWORD_RESET_SUCCESS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    SCOPE_VIOLATION = "SCOPE_VIOLATION"
    SESSION_HIJACKING_DETECTED = "SESSION_HIJACKING_DETECTED"
    SESSION_EVICTED = "SESSION_EVICTED"


class AuditSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


_HIGH_SEVERITY = {
    AuditEventType.ACCOUNT_LOCKED,
    AuditEventType.SESSION_HIJACKING_DETECTED,
}
_MEDIUM_ON_FAILURE = {
    AuditEventType.LOGIN_FAILURE,
    AuditEventType.PERMISSION_DENIED,
    AuditEventType.SCOPE_VIOLATION,
}


def determine_severity(event_type: AuditEventType, success: bool) -> AuditSeverity:
    if event_type is AuditEventType.REFRESH_TOKEN_REUSE:
        # Replay of a rotated refresh token means the token chain leaked
        return AuditSeverity.CRITICAL
    if event_type in _HIGH_SEVERITY:
        return AuditSeverity.HIGH
    if not success and event_type in _MEDIUM_ON_FAILURE:
        return AuditSeverity.MEDIUM
    return AuditSeverity.LOW


class AuditSink(Protocol):
    def append_audit_event(self, event: AuditEvent) -> None: ...


class AuditLogger:
    """Best-effort audit trail.

    ``record`` never raises and never waits on the write; failures are logged
    and dropped.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    def record(
        self,
        event_type: AuditEventType,
        *,
        success: bool = True,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            event_type=event_type.value,
            severity=determine_severity(event_type, success).value,
            success=success,
            user_id=user_id,
            organization_id=organization_id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            detail=dict(detail or {}),
            created_at=utcnow(),
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(event)
            return
        task = loop.create_task(asyncio.to_thread(self._write, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _write(self, event: AuditEvent) -> None:
        try:
            self.sink.append_audit_event(event)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                event_type=event.event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for in-flight writes; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["AuditEventType", "AuditSeverity", "AuditLogger", "determine_severity"]
