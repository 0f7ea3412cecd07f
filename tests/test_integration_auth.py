"""Integration tests for the HTTP authentication flow.

Tests the complete flow through the API including:
- Owner registration
- Login, lockout and the /me principal
- Token refresh and reuse
- Logout
- Password reset
- Session management
- Role and scope enforcement
"""

import pytest
from fastapi.testclient import TestClient

from orgauth.app import create_app
from orgauth.storage.models import Role

PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "N3w!Passw0rd"
OWNER_EMAIL = "owner@example.com"


@pytest.fixture
def client(runtime):
    """Create a test client bound to an isolated in-memory runtime."""
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def _register(client, email=OWNER_EMAIL, password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "password": password,
            "first_name": "Olive",
            "last_name": "Owner",
            "organization_name": "Acme",
            "industry": "Retail",
        },
    )


def _login(client, email=OWNER_EMAIL, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(response):
    return {"Authorization": f"Bearer {response.json()['data']['tokens']['access_token']}"}


def _add_manager(runtime, organization_id, departments):
    return runtime.store.create_user(
        "manager@example.com",
        runtime.passwords.hash(PASSWORD),
        organization_id,
        role=Role.MANAGER,
        first_name="Mia",
        last_name="Manager",
        assigned_departments=departments,
    )


class TestRegistration:
    """Tests for owner registration."""

    def test_register_creates_owner_and_organization(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["role"] == "OWNER"
        assert data["user"]["status"] == "ACTIVE"
        assert data["organization"]["name"] == "Acme"
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["tokens"]["expires_in"] > 0
        assert "password_hash" not in data["user"]

    def test_duplicate_email_conflicts(self, client):
        _register(client)

        response = _register(client)

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["details"] == {"field": "email"}

    def test_weak_password_reports_every_violation(self, client):
        response = _register(client, password="abc12345")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "weak_password"
        assert len(error["details"]["violations"]) == 2

    def test_malformed_email_is_rejected(self, client):
        response = _register(client, email="not-an-email")

        assert response.status_code == 422


class TestLogin:
    """Tests for login, lockout and the authenticated principal."""

    def test_login_then_me(self, client):
        registered = _register(client)

        response = _login(client)
        assert response.status_code == 200
        me = client.get("/v1/auth/me", headers=_bearer(response))

        assert me.status_code == 200
        data = me.json()["data"]
        assert data["user"]["id"] == registered.json()["data"]["user"]["id"]
        assert data["principal"]["role"] == "OWNER"
        assert data["principal"]["session_id"] == response.json()["data"]["tokens"]["session_id"]

    def test_wrong_password(self, client):
        _register(client)

        response = _login(client, password="Wr0ng!Passw0rd")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_unknown_email_matches_wrong_password(self, client):
        _register(client)

        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="Wr0ng!Passw0rd")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_account_locks_after_repeated_failures(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="Wr0ng!Passw0rd").status_code == 401

        response = _login(client)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert "locked_until" in error["details"]

    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "Invalid token"
        assert error["details"] == {"reason": "missing_token"}
        assert response.headers["WWW-Authenticate"].startswith("Bearer ")

    def test_non_ascii_signature_is_unauthorized(self, client):
        registered = _register(client)
        head, body, _ = registered.json()["data"]["tokens"]["access_token"].split(".")
        header = f"Bearer {head}.{body}.éabc".encode("latin-1")

        response = client.get("/v1/auth/me", headers={"Authorization": header})

        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "invalid_signature"}


class TestTokenLifecycle:
    """Tests for refresh rotation and logout."""

    def test_refresh_rotates_and_rejects_reuse(self, client):
        registered = _register(client)
        old_refresh = registered.json()["data"]["tokens"]["refresh_token"]

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": old_refresh})
        assert refreshed.status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(refreshed)).status_code == 200

        reused = client.post("/v1/auth/refresh", json={"refresh_token": old_refresh})
        assert reused.status_code == 401

    def test_logout_revokes_access_token(self, client):
        registered = _register(client)
        headers = _bearer(registered)

        response = client.post("/v1/auth/logout", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Logged out"}

        after = client.get("/v1/auth/me", headers=headers)
        assert after.status_code == 401
        assert after.json()["error"]["details"]["reason"] == "token_revoked"

    def test_logout_invalidates_refresh_token(self, client):
        registered = _register(client)

        client.post("/v1/auth/logout", headers=_bearer(registered))
        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": registered.json()["data"]["tokens"]["refresh_token"]},
        )

        assert response.status_code == 401


class TestPasswordFlows:
    """Tests for forgot, reset and change password."""

    def test_forgot_password_does_not_reveal_accounts(self, client, outbox):
        _register(client)

        known = client.post("/v1/auth/forgot-password", json={"email": OWNER_EMAIL})
        unknown = client.post(
            "/v1/auth/forgot-password", json={"email": "nobody@example.com"}
        )

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(outbox.sent) == 1

    def test_reset_password_with_delivered_token(self, client, outbox):
        registered = _register(client)
        client.post("/v1/auth/forgot-password", json={"email": OWNER_EMAIL})
        token = outbox.latest_for(OWNER_EMAIL)

        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD}
        )
        assert response.status_code == 200

        assert client.get("/v1/auth/me", headers=_bearer(registered)).status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200
        replay = client.post(
            "/v1/auth/reset-password",
            json={"token": token, "new_password": "An0ther!Passw0rd"},
        )
        assert replay.status_code == 400

    def test_change_password_rejects_reuse(self, client):
        registered = _register(client)

        response = client.post(
            "/v1/auth/change-password",
            headers=_bearer(registered),
            json={"current_password": PASSWORD, "new_password": PASSWORD},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "password_reused"

    def test_change_password_keeps_current_session(self, client):
        registered = _register(client)
        other = _login(client)

        response = client.post(
            "/v1/auth/change-password",
            headers=_bearer(registered),
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        )

        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(registered)).status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(other)).status_code == 401


class TestSessions:
    """Tests for listing and revoking sessions."""

    def test_list_marks_current_session(self, client):
        registered = _register(client)
        _login(client)

        response = client.get("/v1/auth/sessions", headers=_bearer(registered))

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 2
        current = [item for item in items if item["current"]]
        assert [item["id"] for item in current] == [
            registered.json()["data"]["tokens"]["session_id"]
        ]

    def test_revoke_other_session(self, client):
        registered = _register(client)
        other = _login(client)
        other_id = other.json()["data"]["tokens"]["session_id"]

        response = client.delete(
            f"/v1/auth/sessions/{other_id}", headers=_bearer(registered)
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"session_id": other_id, "revoked": True}
        assert client.get("/v1/auth/me", headers=_bearer(other)).status_code == 401

    def test_revoke_unknown_session(self, client):
        registered = _register(client)

        response = client.delete("/v1/auth/sessions/missing", headers=_bearer(registered))

        assert response.status_code == 404


class TestAuthorization:
    """Tests for role and scope enforcement on guarded routes."""

    def test_owner_reads_organization(self, client, runtime):
        registered = _register(client)
        org_id = registered.json()["data"]["organization"]["id"]
        runtime.store.add_branch(org_id, "North", ["d1", "d2"])

        response = client.get("/v1/organization", headers=_bearer(registered))

        assert response.status_code == 200
        branches = response.json()["data"]["branches"]
        assert branches[0]["department_ids"] == ["d1", "d2"]

    def test_manager_cannot_read_organization(self, client, runtime):
        registered = _register(client)
        _add_manager(runtime, registered.json()["data"]["organization"]["id"], ["d1"])
        manager = _login(client, email="manager@example.com")

        response = client.get("/v1/organization", headers=_bearer(manager))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_manager_department_scope(self, client, runtime):
        registered = _register(client)
        _add_manager(runtime, registered.json()["data"]["organization"]["id"], ["d1"])
        headers = _bearer(_login(client, email="manager@example.com"))

        allowed = client.get("/v1/departments/d1/access", headers=headers)
        denied = client.get("/v1/departments/d2/access", headers=headers)

        assert allowed.status_code == 200
        assert allowed.json()["data"] == {
            "scope": "DEPARTMENT",
            "scope_id": "d1",
            "granted": True,
        }
        assert denied.status_code == 403
        assert denied.json()["error"]["details"] == {
            "scope": "DEPARTMENT",
            "scope_id": "d2",
        }

    def test_manager_has_no_branch_scope(self, client, runtime):
        registered = _register(client)
        org_id = registered.json()["data"]["organization"]["id"]
        branch = runtime.store.add_branch(org_id, "North", ["d1"])
        _add_manager(runtime, org_id, ["d1"])
        headers = _bearer(_login(client, email="manager@example.com"))

        response = client.get(f"/v1/branches/{branch.id}/access", headers=headers)

        assert response.status_code == 403


class TestTransport:
    """Tests for request correlation, security headers and health."""

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        response = _register(client)

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["cache"]["status"] == "healthy"
