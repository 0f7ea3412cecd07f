from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

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
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS organization (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        industry TEXT,
        website TEXT,
        branches JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        organization_id TEXT NOT NULL REFERENCES organization(id),
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        assigned_branches JSONB NOT NULL DEFAULT '[]'::jsonb,
        assigned_departments JSONB NOT NULL DEFAULT '[]'::jsonb,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        password_history JSONB NOT NULL DEFAULT '[]'::jsonb,
        last_login_at TIMESTAMPTZ,
        reset_token_hash TEXT UNIQUE,
        reset_token_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organization_id TEXT NOT NULL,
        session_id TEXT,
        ip_address TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id) WHERE NOT revoked",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        user_id TEXT,
        organization_id TEXT,
        email TEXT,
        ip_address TEXT,
        user_agent TEXT,
        detail JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_org_created_idx ON audit_log (organization_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed store for users, organizations, refresh tokens and audit."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # organizations -------------------------------------------------------
    @staticmethod
    def _row_to_org(row: Dict[str, Any]) -> Organization:
        return Organization(
            id=row["id"],
            name=row["name"],
            industry=row.get("industry"),
            website=row.get("website"),
            branches=[
                Branch(
                    id=b["id"],
                    name=b.get("name", ""),
                    department_ids=list(b.get("department_ids") or []),
                )
                for b in row.get("branches") or []
            ],
            created_at=row.get("created_at") or utcnow(),
        )

    def create_organization(
        self,
        name: str,
        *,
        industry: Optional[str] = None,
        website: Optional[str] = None,
    ) -> Organization:
        org_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO organization (id, name, industry, website)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (org_id, name, industry, website),
            ).fetchone()
        return self._row_to_org(row)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (organization_id,)
            ).fetchone()
        return self._row_to_org(row) if row else None

    def add_branch(
        self, organization_id: str, name: str, department_ids: Iterable[str] = ()
    ) -> Branch:
        branch = Branch(id=str(uuid.uuid4()), name=name, department_ids=list(department_ids))
        payload = {"id": branch.id, "name": branch.name, "department_ids": branch.department_ids}
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE organization SET branches = branches || jsonb_build_array(%s)
                WHERE id = %s
                RETURNING id
                """,
                (Jsonb(payload), organization_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "organization not found", {"organization_id": organization_id}
            )
        return branch

    def get_department_branch(
        self, organization_id: str, department_id: str
    ) -> Optional[str]:
        org = self.get_organization(organization_id)
        return org.branch_for_department(department_id) if org else None

    # users ---------------------------------------------------------------
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            organization_id=row["organization_id"],
            password_hash=row["password_hash"],
            role=Role(row["role"]),
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            status=UserStatus(row["status"]),
            assigned_branches=list(row.get("assigned_branches") or []),
            assigned_departments=list(row.get("assigned_departments") or []),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            password_history=list(row.get("password_history") or []),
            last_login_at=row.get("last_login_at"),
            reset_token_hash=row.get("reset_token_hash"),
            reset_token_expires_at=row.get("reset_token_expires_at"),
            created_at=row.get("created_at") or utcnow(),
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, organization_id, password_hash, role, first_name,
                        last_name, status, assigned_branches, assigned_departments
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        organization_id,
                        password_hash,
                        Role(role).value,
                        first_name,
                        last_name,
                        UserStatus(status).value,
                        Jsonb(list(assigned_branches)),
                        Jsonb(list(assigned_departments)),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organization not found", {"field": "organization_id"}
            )
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE reset_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def _update_user(self, user_id: str, sql: str, params: tuple) -> User:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def increment_failed_attempts(
        self, user_id: str, *, max_attempts: int, lock_for: timedelta
    ) -> User:
        # A lapsed lock restarts the count at 1; reaching the limit sets a new lock
        return self._update_user(
            user_id,
            """
            UPDATE app_user SET
                failed_login_attempts = CASE
                    WHEN locked_until IS NOT NULL AND locked_until <= now() THEN 1
                    ELSE failed_login_attempts + 1
                END,
                locked_until = CASE
                    WHEN (CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= now() THEN 1
                        ELSE failed_login_attempts + 1
                    END) >= %s THEN now() + %s
                    WHEN locked_until IS NOT NULL AND locked_until <= now() THEN NULL
                    ELSE locked_until
                END
            WHERE id = %s
            RETURNING *
            """,
            (max_attempts, lock_for, user_id),
        )

    def reset_failed_attempts(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET failed_login_attempts = 0, locked_until = NULL
                WHERE id = %s
                """,
                (user_id,),
            )

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

    def update_password(
        self, user_id: str, password_hash: str, *, history_size: int
    ) -> User:
        with self._connect() as conn:
            current = conn.execute(
                "SELECT password_hash, password_history FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not current:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            history = list(current.get("password_history") or [])
            if current.get("password_hash"):
                history.insert(0, current["password_hash"])
            row = conn.execute(
                """
                UPDATE app_user SET
                    password_hash = %s,
                    password_history = %s,
                    reset_token_hash = NULL,
                    reset_token_expires_at = NULL,
                    failed_login_attempts = 0,
                    locked_until = NULL
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, Jsonb(history[:history_size]), user_id),
            ).fetchone()
        return self._row_to_user(row)

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET reset_token_hash = %s, reset_token_expires_at = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, user_id),
            )

    def set_user_status(self, user_id: str, status: UserStatus) -> None:
        self._update_user(
            user_id,
            "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
            (UserStatus(status).value, user_id),
        )

    # refresh tokens ------------------------------------------------------
    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            expires_at=row["expires_at"],
            session_id=row.get("session_id"),
            ip_address=row.get("ip_address"),
            revoked=bool(row.get("revoked")),
            revoked_at=row.get("revoked_at"),
            replaced_by=row.get("replaced_by"),
            created_at=row.get("created_at") or utcnow(),
        )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (
                        token, user_id, organization_id, session_id, ip_address, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.token,
                        record.user_id,
                        record.organization_id,
                        record.session_id,
                        record.ip_address,
                        record.expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._row_to_refresh(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def rotate_refresh_token(
        self, token: str, replaced_by: str, *, now: Optional[datetime] = None
    ) -> bool:
        """Conditional revoke: only the first caller on a live token wins."""
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, replaced_by = %s
                WHERE token = %s AND revoked = FALSE AND expires_at > %s
                RETURNING token
                """,
                (now, replaced_by, token, now),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND revoked = FALSE
                  AND (%s::text IS NULL OR session_id = %s::text)
                  AND (%s::text IS NULL OR session_id IS DISTINCT FROM %s::text)
                """,
                (
                    now or utcnow(),
                    user_id,
                    session_id,
                    session_id,
                    except_session_id,
                    except_session_id,
                ),
            )
            return cur.rowcount

    # audit ---------------------------------------------------------------
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, event_type, severity, success, user_id, organization_id,
                    email, ip_address, user_agent, detail, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type,
                    event.severity,
                    event.success,
                    event.user_id,
                    event.organization_id,
                    event.email,
                    event.ip_address,
                    event.user_agent,
                    Jsonb(event.detail or {}),
                    event.created_at,
                ),
            )

    def list_audit_events(
        self,
        *,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if organization_id:
            clauses.append("organization_id = %s")
            params.append(organization_id)
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [
            AuditEvent(
                id=row["id"],
                event_type=row["event_type"],
                severity=row["severity"],
                success=row["success"],
                user_id=row.get("user_id"),
                organization_id=row.get("organization_id"),
                email=row.get("email"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                detail=row.get("detail") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]
