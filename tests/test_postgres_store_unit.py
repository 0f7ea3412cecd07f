from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from orgauth.storage.errors import ConstraintViolation
from orgauth.storage.models import Role, UserStatus
from orgauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        result = self.pool.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.results = list(results)
        self.statements = []

    def connection(self):
        return FakeConnection(self)


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    return store


def _user_row(**overrides):
    row = {
        "id": "u1",
        "email": "owner@example.com",
        "organization_id": "o1",
        "password_hash": "hash",
        "role": "OWNER",
        "first_name": "Olive",
        "last_name": "Owner",
        "status": "ACTIVE",
        "assigned_branches": [],
        "assigned_departments": ["d1"],
        "failed_login_attempts": 0,
        "locked_until": None,
        "password_history": ["old"],
        "last_login_at": None,
        "reset_token_hash": None,
        "reset_token_expires_at": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def test_user_row_maps_to_model():
    store = _store(FakeCursor(_user_row()))

    user = store.get_user("u1")

    assert user.role is Role.OWNER
    assert user.status is UserStatus.ACTIVE
    assert user.assigned_departments == ["d1"]
    assert user.password_history == ["old"]
    sql, params = store.pool.statements[0]
    assert sql == "SELECT * FROM app_user WHERE id = %s"
    assert params == ("u1",)


def test_missing_user_is_none():
    assert _store(FakeCursor(None)).get_user("nope") is None


def test_duplicate_email_becomes_constraint_violation():
    store = _store(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("owner@example.com", "hash", "o1", role=Role.OWNER)

    assert exc_info.value.field == "email"


def test_organization_branches_decode_from_jsonb():
    store = _store(
        FakeCursor(
            {
                "id": "o1",
                "name": "Acme",
                "industry": None,
                "website": None,
                "branches": [{"id": "b1", "name": "North", "department_ids": ["d1", "d2"]}],
                "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            }
        )
    )

    org = store.get_organization("o1")

    assert org.branches[0].department_ids == ["d1", "d2"]
    assert org.branch_for_department("d2") == "b1"


def test_branch_on_unknown_organization():
    with pytest.raises(ConstraintViolation):
        _store(FakeCursor(None)).add_branch("missing", "North", ["d1"])


def test_rotation_is_a_conditional_update():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    store = _store(FakeCursor({"token": "r1"}), FakeCursor(None))

    assert store.rotate_refresh_token("r1", "r2", now=now)
    assert not store.rotate_refresh_token("r1", "r3", now=now)

    sql, params = store.pool.statements[0]
    assert "revoked = FALSE AND expires_at > %s" in sql
    assert params == (now, "r2", "r1", now)


def test_bulk_revocation_reports_rowcount():
    store = _store(FakeCursor(rowcount=2))

    revoked = store.revoke_user_refresh_tokens(
        "u1", except_session_id="s1", now=datetime.now(timezone.utc)
    )

    assert revoked == 2
    _, params = store.pool.statements[0]
    assert params[1:] == ("u1", None, None, "s1", "s1")


def test_reset_token_lookup_uses_digest():
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    store = _store(
        FakeCursor(_user_row(reset_token_hash="digest", reset_token_expires_at=expires))
    )

    user = store.get_user_by_reset_token("digest")

    assert user.reset_token_expires_at == expires
    assert store.pool.statements[0][1] == ("digest",)
