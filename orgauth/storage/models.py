from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Older rows and drivers may hand back naive timestamps; treat them as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Role(str, Enum):
    """Organization roles, highest first. OWNER > LEADER > MANAGER."""

    OWNER = "OWNER"
    LEADER = "LEADER"
    MANAGER = "MANAGER"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"


class ScopeKind(str, Enum):
    BRANCH = "BRANCH"
    DEPARTMENT = "DEPARTMENT"


@dataclass
class Branch:
    id: str
    name: str
    department_ids: List[str] = field(default_factory=list)


@dataclass
class Organization:
    id: str
    name: str
    industry: Optional[str] = None
    website: Optional[str] = None
    branches: List[Branch] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def branch_for_department(self, department_id: str) -> Optional[str]:
        for branch in self.branches:
            if department_id in branch.department_ids:
                return branch.id
        return None


@dataclass
class User:
    """Credential record plus the identity fields the auth flows read."""

    id: str
    email: str
    organization_id: str
    password_hash: str
    role: Role = Role.MANAGER
    first_name: str = ""
    last_name: str = ""
    status: UserStatus = UserStatus.ACTIVE
    assigned_branches: List[str] = field(default_factory=list)
    assigned_departments: List[str] = field(default_factory=list)
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    password_history: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """Live login session as held in the session store."""

    id: str
    user_id: str
    organization_id: str
    role: Role
    assigned_branches: List[str]
    assigned_departments: List[str]
    created_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=uuid.uuid4().hex,
            user_id=user.id,
            organization_id=user.organization_id,
            role=Role(user.role),
            assigned_branches=list(user.assigned_branches),
            assigned_departments=list(user.assigned_departments),
            created_at=now,
            last_activity_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "role": Role(self.role).value,
            "assigned_branches": list(self.assigned_branches),
            "assigned_departments": list(self.assigned_departments),
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            organization_id=data["organization_id"],
            role=Role(data["role"]),
            assigned_branches=list(data.get("assigned_branches") or []),
            assigned_departments=list(data.get("assigned_departments") or []),
            created_at=_as_utc(datetime.fromisoformat(data["created_at"])),
            last_activity_at=_as_utc(datetime.fromisoformat(data["last_activity_at"])),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class RefreshToken:
    token: str
    user_id: str
    organization_id: str
    expires_at: datetime
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    id: str
    event_type: str
    severity: str
    success: bool
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True once ``expires_at`` has passed. A missing expiry never expires."""
    if expires_at is None:
        return False
    return _as_utc(expires_at) <= (now or utcnow())


def is_locked(user: User, now: Optional[datetime] = None) -> bool:
    """An account is locked while ``locked_until`` lies in the future."""
    if user.locked_until is None:
        return False
    return not is_expired(user.locked_until, now)
