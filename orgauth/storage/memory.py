from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from orgauth.logging import get_logger
from orgauth.storage.errors import ConstraintViolation
from orgauth.storage.models import (
    AuditEvent,
    Branch,
    Organization,
    RefreshToken,
    Role,
    User,
    UserStatus,
    is_expired,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    Every read returns a copy so callers cannot mutate shared state behind the
    lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self.organizations: Dict[str, Organization] = {}
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.audit_events: List[AuditEvent] = []

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # organizations -------------------------------------------------------
    def create_organization(
        self,
        name: str,
        *,
        industry: Optional[str] = None,
        website: Optional[str] = None,
    ) -> Organization:
        org = Organization(
            id=str(uuid.uuid4()), name=name, industry=industry, website=website
        )
        with self._data_lock:
            self.organizations[org.id] = org
        return replace(org, branches=list(org.branches))

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            if not org:
                return None
            return replace(
                org,
                branches=[replace(b, department_ids=list(b.department_ids)) for b in org.branches],
            )

    def add_branch(
        self, organization_id: str, name: str, department_ids: Iterable[str] = ()
    ) -> Branch:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            if not org:
                raise ConstraintViolation(
                    "organization not found", {"organization_id": organization_id}
                )
            branch = Branch(id=str(uuid.uuid4()), name=name, department_ids=list(department_ids))
            org.branches.append(branch)
            return replace(branch, department_ids=list(branch.department_ids))

    def get_department_branch(
        self, organization_id: str, department_id: str
    ) -> Optional[str]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            return org.branch_for_department(department_id) if org else None

    # users ---------------------------------------------------------------
    def create_user(
        self,
        email: str,
        password_hash: str,
        organization_id: str,
        *,
        role: Role = Role.MANAGER,
        first_name: str = "",
        last_name: str = "",
        status: UserStatus = UserStatus.ACTIVE,
        assigned_branches: Iterable[str] = (),
        assigned_departments: Iterable[str] = (),
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if organization_id not in self.organizations:
                raise ConstraintViolation(
                    "organization not found", {"field": "organization_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                organization_id=organization_id,
                password_hash=password_hash,
                role=Role(role),
                first_name=first_name,
                last_name=last_name,
                status=UserStatus(status),
                assigned_branches=list(assigned_branches),
                assigned_departments=list(assigned_departments),
            )
            self.users[user.id] = user
            return self._copy_user(user)

    @staticmethod
    def _copy_user(user: User) -> User:
        return replace(
            user,
            assigned_branches=list(user.assigned_branches),
            assigned_departments=list(user.assigned_departments),
            password_history=list(user.password_history),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return self._copy_user(user) if user else None

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.reset_token_hash == token_hash),
                None,
            )
            return self._copy_user(user) if user else None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def increment_failed_attempts(
        self, user_id: str, *, max_attempts: int, lock_for: timedelta
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            now = utcnow()
            if user.locked_until is not None and is_expired(user.locked_until, now):
                # A lapsed lock starts a fresh window
                user.failed_login_attempts = 0
                user.locked_until = None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.locked_until = now + lock_for
            return self._copy_user(user)

    def reset_failed_attempts(self, user_id: str) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_attempts = 0
            user.locked_until = None

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            self._require_user(user_id).last_login_at = when or utcnow()

    def update_password(
        self, user_id: str, password_hash: str, *, history_size: int
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            history = list(user.password_history)
            if user.password_hash:
                history.insert(0, user.password_hash)
            user.password_history = history[:history_size]
            user.password_hash = password_hash
            user.reset_token_hash = None
            user.reset_token_expires_at = None
            user.failed_login_attempts = 0
            user.locked_until = None
            return self._copy_user(user)

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.reset_token_hash = token_hash
            user.reset_token_expires_at = expires_at

    def set_user_status(self, user_id: str, status: UserStatus) -> None:
        with self._data_lock:
            self._require_user(user_id).status = UserStatus(status)

    # refresh tokens ------------------------------------------------------
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = replace(record)
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, token: str, replaced_by: str, *, now: Optional[datetime] = None
    ) -> bool:
        """Revoke ``token`` and chain it to ``replaced_by`` if it is still live.

        Only one of any number of concurrent callers observes True.
        """
        now = now or utcnow()
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.revoked or is_expired(record.expires_at, now):
                return False
            record.revoked = True
            record.revoked_at = now
            record.replaced_by = replaced_by
            return True

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        revoked = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or record.revoked:
                    continue
                if session_id and record.session_id != session_id:
                    continue
                if except_session_id and record.session_id == except_session_id:
                    continue
                record.revoked = True
                record.revoked_at = now
                revoked += 1
        return revoked

    # audit ---------------------------------------------------------------
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)

    def list_audit_events(
        self,
        *,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            results = [
                e
                for e in self.audit_events
                if (not organization_id or e.organization_id == organization_id)
                and (not user_id or e.user_id == user_id)
                and (not event_type or e.event_type == event_type)
            ]
        return sorted(results, key=lambda e: e.created_at, reverse=True)[:limit]
