from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional, Protocol

from orgauth.config import Settings
from orgauth.logging import get_logger
from orgauth.service.audit import AuditEventType, AuditLogger
from orgauth.service.errors import (
    AccountInactive,
    AccountLocked,
    EmailAlreadyExists,
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFoundError,
    PasswordReused,
    TokenRejected,
    WeakPassword,
)
from orgauth.service.passwords import PasswordVerifier, generate_opaque_token, hash_token
from orgauth.service.tokens import AccessClaims, TokenService, token_id
from orgauth.storage.errors import ConstraintViolation
from orgauth.storage.models import (
    Organization,
    RefreshToken,
    Role,
    Session,
    User,
    UserStatus,
    is_expired,
    is_locked,
    utcnow,
)
from orgauth.storage.revocation import RevocationStore
from orgauth.storage.sessions import SessionStore

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_organization(
        self, name: str, *, industry: Optional[str] = None, website: Optional[str] = None
    ) -> Organization: ...

    def get_organization(self, organization_id: str) -> Optional[Organization]: ...

    def get_department_branch(
        self, organization_id: str, department_id: str
    ) -> Optional[str]: ...

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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]: ...

    def increment_failed_attempts(
        self, user_id: str, *, max_attempts: int, lock_for: timedelta
    ) -> User: ...

    def reset_failed_attempts(self, user_id: str) -> None: ...

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None: ...

    def update_password(
        self, user_id: str, password_hash: str, *, history_size: int
    ) -> User: ...

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, token: str, replaced_by: str, *, now: Optional[datetime] = None
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int: ...


# Receives (user, raw reset token, expiry); delivering it is someone else's job
ResetTokenSink = Callable[[User, str, datetime], Any]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair
    organization: Optional[Organization] = None


@dataclass(frozen=True)
class RegistrationInput:
    email: str
    password: str
    first_name: str
    last_name: str
    organization_name: str
    industry: Optional[str] = None
    website: Optional[str] = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _log_reset_token(user: User, token: str, expires_at: datetime) -> None:
    logger.info(
        "password_reset_token_issued",
        user_id=user.id,
        expires_at=expires_at.isoformat(),
    )


class AuthService:
    """Register/login/logout/refresh and password flows.

    The only writer of sessions and the only appender to the revocation store.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionStore,
        revocations: RevocationStore,
        tokens: TokenService,
        passwords: PasswordVerifier,
        audit: AuditLogger,
        settings: Settings,
        *,
        reset_token_sink: Optional[ResetTokenSink] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.revocations = revocations
        self.tokens = tokens
        self.passwords = passwords
        self.audit = audit
        self.settings = settings
        self.reset_token_sink = reset_token_sink or _log_reset_token
        self.logger = logger

    def _now(self) -> datetime:
        return utcnow()

    # ------------------------------------------------------------------
    # token issuance
    # ------------------------------------------------------------------
    def _on_session_evicted(self, session: Session) -> None:
        self.audit.record(
            AuditEventType.SESSION_EVICTED,
            user_id=session.user_id,
            organization_id=session.organization_id,
            ip_address=session.ip_address,
            detail={"session_id": session.id},
        )

    async def _issue_tokens(
        self,
        user: User,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        refresh: Optional[tuple[str, datetime]] = None,
    ) -> TokenPair:
        session = Session.new(user, ip_address=ip_address, user_agent=user_agent)
        await self.sessions.create(session, on_evicted=self._on_session_evicted)
        access_token, claims = self.tokens.issue_access_token(user, session)
        refresh_token, refresh_expires_at = refresh or self.tokens.issue_refresh_token(user.id)
        self.store.create_refresh_token(
            RefreshToken(
                token=refresh_token,
                user_id=user.id,
                organization_id=user.organization_id,
                session_id=session.id,
                ip_address=ip_address,
                expires_at=refresh_expires_at,
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session.id,
            expires_in=self.tokens.access_ttl_seconds,
            access_expires_at=datetime.fromtimestamp(claims.exp, tz=refresh_expires_at.tzinfo),
            refresh_expires_at=refresh_expires_at,
        )

    # ------------------------------------------------------------------
    # password policy
    # ------------------------------------------------------------------
    def _require_strong(self, password: str) -> None:
        report = self.passwords.strength(password)
        if not report.valid:
            raise WeakPassword(report.violations)

    async def _require_unused(self, user: User, password: str) -> None:
        size = self.settings.password_history_size
        past = [user.password_hash, *user.password_history[:size]]
        if await asyncio.to_thread(self.passwords.in_history, password, past):
            raise PasswordReused(size)

    async def _store_new_password(self, user: User, password: str) -> User:
        new_hash = await asyncio.to_thread(self.passwords.hash, password)
        return self.store.update_password(
            user.id, new_hash, history_size=self.settings.password_history_size
        )

    # ------------------------------------------------------------------
    # flows
    # ------------------------------------------------------------------
    async def register(
        self,
        data: RegistrationInput,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(data.email)
        if self.store.get_user_by_email(email):
            raise EmailAlreadyExists()
        self._require_strong(data.password)

        password_hash = await asyncio.to_thread(self.passwords.hash, data.password)
        organization = self.store.create_organization(
            data.organization_name.strip(),
            industry=data.industry,
            website=data.website,
        )
        try:
            # The initial owner skips email verification
            user = self.store.create_user(
                email,
                password_hash,
                organization.id,
                role=Role.OWNER,
                first_name=data.first_name.strip(),
                last_name=data.last_name.strip(),
                status=UserStatus.ACTIVE,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                self.logger.warning(
                    "register_email_race", organization_id=organization.id
                )
                raise EmailAlreadyExists() from exc
            raise

        tokens = await self._issue_tokens(user, ip_address, user_agent)
        self.audit.record(
            AuditEventType.USER_REGISTERED,
            user_id=user.id,
            organization_id=organization.id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "owner_registered", user_id=user.id, organization_id=organization.id
        )
        return AuthResult(user=user, tokens=tokens, organization=organization)

    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None:
            await asyncio.to_thread(self.passwords.verify_dummy, password)
            self._record_login_failure(None, email, ip_address, user_agent, "unknown_email")
            raise InvalidCredentials()

        now = self._now()
        if is_locked(user, now):
            self._record_login_failure(user, email, ip_address, user_agent, "account_locked")
            raise AccountLocked(user.locked_until)
        if user.status != UserStatus.ACTIVE:
            self._record_login_failure(user, email, ip_address, user_agent, "account_inactive")
            raise AccountInactive(UserStatus(user.status).value)

        if not await asyncio.to_thread(self.passwords.verify, password, user.password_hash):
            updated = self.store.increment_failed_attempts(
                user.id,
                max_attempts=self.settings.max_failed_logins,
                lock_for=timedelta(minutes=self.settings.lockout_minutes),
            )
            self._record_login_failure(
                user,
                email,
                ip_address,
                user_agent,
                "invalid_password",
                attempts=updated.failed_login_attempts,
            )
            if is_locked(updated, now):
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    attempts=updated.failed_login_attempts,
                    locked_until=updated.locked_until.isoformat(),
                )
                self.audit.record(
                    AuditEventType.ACCOUNT_LOCKED,
                    success=False,
                    user_id=user.id,
                    organization_id=user.organization_id,
                    email=email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    detail={
                        "attempts": updated.failed_login_attempts,
                        "locked_until": updated.locked_until.isoformat(),
                    },
                )
            raise InvalidCredentials()

        if user.failed_login_attempts or user.locked_until:
            self.store.reset_failed_attempts(user.id)
        self.store.update_last_login(user.id, now)
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now

        tokens = await self._issue_tokens(user, ip_address, user_agent)
        self.audit.record(
            AuditEventType.LOGIN_SUCCESS,
            user_id=user.id,
            organization_id=user.organization_id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            detail={"session_id": tokens.session_id},
        )
        return AuthResult(user=user, tokens=tokens)

    def _record_login_failure(
        self,
        user: Optional[User],
        email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        reason: str,
        **detail: Any,
    ) -> None:
        self.logger.info(
            "login_failed",
            reason=reason,
            user_id=user.id if user else None,
            ip_address=ip_address,
        )
        self.audit.record(
            AuditEventType.LOGIN_FAILURE,
            success=False,
            user_id=user.id if user else None,
            organization_id=user.organization_id if user else None,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            detail={"reason": reason, **detail},
        )

    async def logout(
        self,
        user_id: str,
        session_id: str,
        access_token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await self.sessions.delete(user_id, session_id)

        organization_id = None
        if access_token:
            try:
                claims = self.tokens.verify_access_token(access_token)
            except TokenRejected as exc:
                # Expired or foreign tokens need no denylist entry
                self.logger.info("logout_token_not_revoked", reason=exc.reason)
            else:
                organization_id = claims.organization_id
                await self.revocations.revoke(
                    token_id(access_token), self.tokens.remaining_seconds(claims.exp)
                )

        revoked = self.store.revoke_user_refresh_tokens(user_id, now=self._now())
        self.logger.info(
            "logout_completed",
            user_id=user_id,
            session_id=session_id,
            refresh_tokens_revoked=revoked,
        )
        self.audit.record(
            AuditEventType.LOGOUT,
            user_id=user_id,
            organization_id=organization_id,
            ip_address=ip_address,
            user_agent=user_agent,
            detail={"session_id": session_id},
        )

    async def refresh(
        self,
        refresh_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        try:
            payload = self.tokens.verify_refresh_token(refresh_token)
        except TokenRejected as exc:
            self.logger.info("refresh_rejected", reason=exc.reason)
            raise InvalidOrExpiredToken() from exc

        record = self.store.get_refresh_token(refresh_token)
        now = self._now()
        if record is None or record.user_id != payload.get("sub"):
            self.logger.info("refresh_rejected", reason="unknown_token")
            raise InvalidOrExpiredToken()
        if record.revoked:
            self.logger.warning(
                "refresh_token_reuse",
                user_id=record.user_id,
                replaced=record.replaced_by is not None,
            )
            self.audit.record(
                AuditEventType.REFRESH_TOKEN_REUSE,
                success=False,
                user_id=record.user_id,
                organization_id=record.organization_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidOrExpiredToken()
        if is_expired(record.expires_at, now):
            raise InvalidOrExpiredToken()

        user = self.store.get_user(record.user_id)
        if user is None:
            raise InvalidOrExpiredToken()
        if user.status != UserStatus.ACTIVE:
            raise AccountInactive(UserStatus(user.status).value)

        successor = self.tokens.issue_refresh_token(user.id)
        if not self.store.rotate_refresh_token(refresh_token, successor[0], now=now):
            # Another request exchanged this token first
            self.logger.info("refresh_rotation_lost", user_id=user.id)
            raise InvalidOrExpiredToken()

        if record.session_id:
            await self.sessions.delete(user.id, record.session_id)
        tokens = await self._issue_tokens(user, ip_address, user_agent, refresh=successor)
        self.audit.record(
            AuditEventType.TOKEN_REFRESH,
            user_id=user.id,
            organization_id=user.organization_id,
            ip_address=ip_address,
            user_agent=user_agent,
            detail={"session_id": tokens.session_id},
        )
        return AuthResult(user=user, tokens=tokens)

    async def change_password(
        self,
        user_id: str,
        session_id: str,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not await asyncio.to_thread(
            self.passwords.verify, current_password, user.password_hash
        ):
            raise InvalidCredentials("Current password is incorrect")
        self._require_strong(new_password)
        await self._require_unused(user, new_password)
        await self._store_new_password(user, new_password)

        # Everywhere else has to log in again with the new password
        ended = await self.sessions.delete_all(user.id, except_session_id=session_id)
        self.store.revoke_user_refresh_tokens(
            user.id, except_session_id=session_id, now=self._now()
        )
        self.logger.info("password_changed", user_id=user.id, sessions_ended=ended)
        self.audit.record(
            AuditEventType.PASSWORD_CHANGE,
            user_id=user.id,
            organization_id=user.organization_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def forgot_password(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Start a reset. Returns nothing either way so callers cannot probe emails."""
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email")
            return

        token = generate_opaque_token()
        expires_at = self._now() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        self.store.set_reset_token(user.id, hash_token(token), expires_at)
        self.audit.record(
            AuditEventType.PASSWORD_RESET_REQUEST,
            user_id=user.id,
            organization_id=user.organization_id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            delivered = self.reset_token_sink(user, token, expires_at)
            if inspect.isawaitable(delivered):
                await delivered
        except Exception as exc:
            # Surfacing this would reveal that the email exists
            self.logger.error(
                "password_reset_delivery_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user = self.store.get_user_by_reset_token(hash_token(token))
        if user is None or is_expired(user.reset_token_expires_at, self._now()):
            raise InvalidOrExpiredToken("Invalid or expired reset token", status_code=400)
        self._require_strong(new_password)
        await self._require_unused(user, new_password)
        await self._store_new_password(user, new_password)

        ended = await self.sessions.delete_all(user.id)
        self.store.revoke_user_refresh_tokens(user.id, now=self._now())
        self.logger.info("password_reset_completed", user_id=user.id, sessions_ended=ended)
        self.audit.record(
            AuditEventType.PASSWORD_RESET_SUCCESS,
            user_id=user.id,
            organization_id=user.organization_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_by_user(user_id)

    async def revoke_session(self, claims: AccessClaims, session_id: str) -> None:
        """Sign out one of the caller's own sessions, e.g. a lost device."""
        if not await self.sessions.delete(claims.user_id, session_id):
            raise NotFoundError("Session not found", detail={"session_id": session_id})
        self.store.revoke_user_refresh_tokens(
            claims.user_id, session_id=session_id, now=self._now()
        )
        self.logger.info(
            "session_ended", user_id=claims.user_id, session_id=session_id
        )


__all__ = [
    "AuthResult",
    "AuthService",
    "AuthStore",
    "RegistrationInput",
    "ResetTokenSink",
    "TokenPair",
    "normalize_email",
]
