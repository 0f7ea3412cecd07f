"""Unit tests for HS256 token signing and verification."""

import json
import time

import pytest

from orgauth.service.errors import InvalidSignature, TokenExpired, TokenRejected
from orgauth.service.tokens import (
    AccessClaims,
    TokenService,
    _encode_segment,
    _signature,
    token_id,
)
from orgauth.storage.models import Role, Session, User

ACCESS_SECRET = "access-secret-for-unit-tests-0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-unit-tests-fedcba9876543210"


@pytest.fixture
def service():
    return TokenService(
        ACCESS_SECRET,
        REFRESH_SECRET,
        access_ttl_seconds=3600,
        refresh_ttl_seconds=7 * 24 * 3600,
    )


@pytest.fixture
def user():
    return User(
        id="user-1",
        email="leader@example.com",
        organization_id="org-1",
        password_hash="x",
        role=Role.LEADER,
        assigned_branches=["b1", "b2"],
        assigned_departments=["d1"],
    )


@pytest.fixture
def session(user):
    return Session.new(user, ip_address="10.0.0.1", user_agent="pytest")


def _forge(header: dict, payload: dict, secret: str) -> str:
    header_enc = _encode_segment(json.dumps(header).encode())
    payload_enc = _encode_segment(json.dumps(payload).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_signature(secret, signing_input)}"


class TestAccessTokens:
    def test_issue_and_verify_carries_identity_claims(self, service, user, session):
        token, issued = service.issue_access_token(user, session)
        claims = service.verify_access_token(token)

        assert claims == issued
        assert claims.user_id == "user-1"
        assert claims.role is Role.LEADER
        assert claims.organization_id == "org-1"
        assert claims.session_id == session.id
        assert claims.assigned_branches == ["b1", "b2"]
        assert claims.assigned_departments == ["d1"]
        assert claims.exp - claims.iat == 3600

    def test_payload_uses_camel_case_claim_names(self, service, user, session):
        _, claims = service.issue_access_token(user, session)
        payload = claims.to_payload()

        assert set(payload) == {
            "sub",
            "email",
            "role",
            "organizationId",
            "assignedBranches",
            "assignedDepartments",
            "sessionId",
            "iat",
            "exp",
        }

    def test_tampered_signature_is_rejected(self, service, user, session):
        token, _ = service.issue_access_token(user, session)
        head, body, sig = token.split(".")
        tampered = f"{head}.{body}.{sig[:-2]}{'A' if sig[-2] != 'A' else 'B'}{sig[-1]}"

        with pytest.raises(InvalidSignature):
            service.verify_access_token(tampered)

    def test_modified_payload_is_rejected(self, service, user, session):
        token, claims = service.issue_access_token(user, session)
        head, _, sig = token.split(".")
        escalated = {**claims.to_payload(), "role": "OWNER"}
        body = _encode_segment(json.dumps(escalated).encode())

        with pytest.raises(InvalidSignature):
            service.verify_access_token(f"{head}.{body}.{sig}")

    def test_alg_none_is_rejected(self, service, user, session):
        _, claims = service.issue_access_token(user, session)
        header = _encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        body = _encode_segment(json.dumps(claims.to_payload()).encode())

        with pytest.raises(InvalidSignature):
            service.verify_access_token(f"{header}.{body}.")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "###.###.###"])
    def test_malformed_tokens_are_rejected(self, service, garbage):
        with pytest.raises(InvalidSignature):
            service.verify_access_token(garbage)

    @pytest.mark.parametrize("segment", ["sig", "payload", "header"])
    def test_non_ascii_segments_are_rejected(self, service, user, session, segment):
        token, _ = service.issue_access_token(user, session)
        head, body, sig = token.split(".")
        parts = {"header": head, "payload": body, "sig": sig}
        parts[segment] = "é" + parts[segment][1:]
        mangled = ".".join([parts["header"], parts["payload"], parts["sig"]])

        with pytest.raises(InvalidSignature) as exc_info:
            service.verify_access_token(mangled)
        assert exc_info.value.reason == "invalid_signature"

    def test_lone_surrogate_is_rejected(self, service, user, session):
        token, _ = service.issue_access_token(user, session)
        head, body, _ = token.split(".")

        with pytest.raises(InvalidSignature):
            service.verify_access_token(f"{head}.{body}.\udcff")

    def test_non_ascii_refresh_token_is_rejected(self, service):
        token, _ = service.issue_refresh_token("user-1")
        head, body, _ = token.split(".")

        with pytest.raises(InvalidSignature):
            service.verify_refresh_token(f"{head}.{body}.éabc")

    def test_expired_token_reports_token_expired(self, service, user, session):
        issued_at = time.time() - 7200
        token, _ = service.issue_access_token(user, session, now=issued_at)

        with pytest.raises(TokenExpired) as exc_info:
            service.verify_access_token(token)
        assert exc_info.value.reason == "token_expired"

    def test_missing_exp_is_invalid_claims(self, service):
        token = _forge({"alg": "HS256", "typ": "JWT"}, {"sub": "u"}, ACCESS_SECRET)

        with pytest.raises(TokenRejected) as exc_info:
            service.verify_access_token(token)
        assert exc_info.value.reason == "invalid_claims"

    def test_missing_identity_claims_are_invalid_claims(self, service):
        token = service.sign({"sub": "u"}, ACCESS_SECRET, 60)

        with pytest.raises(TokenRejected) as exc_info:
            service.verify_access_token(token)
        assert exc_info.value.reason == "invalid_claims"

    def test_refresh_secret_cannot_sign_access_tokens(self, service, user, session):
        _, claims = service.issue_access_token(user, session)
        forged = _forge({"alg": "HS256", "typ": "JWT"}, claims.to_payload(), REFRESH_SECRET)

        with pytest.raises(InvalidSignature):
            service.verify_access_token(forged)


class TestRefreshTokens:
    def test_refresh_token_verifies_only_with_refresh_secret(self, service):
        token, expires_at = service.issue_refresh_token("user-1")

        assert service.verify_refresh_token(token)["sub"] == "user-1"
        assert expires_at.tzinfo is not None
        with pytest.raises(InvalidSignature):
            service.verify_access_token(token)

    def test_refresh_tokens_minted_together_are_distinct(self, service):
        now = time.time()
        first, _ = service.issue_refresh_token("user-1", now=now)
        second, _ = service.issue_refresh_token("user-1", now=now)

        assert first != second

    def test_expired_refresh_token_is_rejected(self, service):
        token, _ = service.issue_refresh_token("user-1", now=time.time() - 8 * 24 * 3600)

        with pytest.raises(TokenExpired):
            service.verify_refresh_token(token)


class TestHelpers:
    def test_identical_secrets_are_refused(self):
        with pytest.raises(ValueError):
            TokenService(ACCESS_SECRET, ACCESS_SECRET)

    def test_remaining_seconds_never_negative(self):
        assert TokenService.remaining_seconds(100, now=50) == 50
        assert TokenService.remaining_seconds(100, now=150) == 0

    def test_token_id_is_stable_and_distinct(self):
        assert token_id("a.b.c") == token_id("a.b.c")
        assert token_id("a.b.c") != token_id("a.b.d")

    def test_claims_from_payload_rejects_unknown_role(self):
        with pytest.raises(TokenRejected):
            AccessClaims.from_payload(
                {
                    "sub": "u",
                    "email": "e@example.com",
                    "role": "ADMIN",
                    "organizationId": "o",
                    "sessionId": "s",
                    "iat": 1,
                    "exp": 2,
                }
            )
