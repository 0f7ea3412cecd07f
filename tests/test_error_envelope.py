"""Tests for the error envelope format and request schema validation.

Error responses share one stable shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<correlation id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from orgauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from orgauth.api.schemas import (
    Envelope,
    ErrorBody,
    LoginRequest,
    RegisterRequest,
)
from orgauth.logging import correlation_id_var


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_domain_codes_are_accepted(self):
        for code in ("weak_password", "password_reused", "account_locked"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")

    def test_details_default_to_none(self):
        assert ErrorBody(code="not_found", message="Session not found").details is None


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_request_id_is_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_invalid_status_is_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_every_mapped_code_is_a_valid_error_code(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    """Tests for the _error_response helper."""

    def test_explicit_code_overrides_status_mapping(self):
        response = _error_response(
            400, "Account locked", {"locked_until": "later"}, code="account_locked"
        )
        body = json.loads(response.body)

        assert response.status_code == 400
        assert body["status"] == "error"
        assert body["error"]["code"] == "account_locked"
        assert body["error"]["details"] == {"locked_until": "later"}

    def test_empty_details_render_as_null(self):
        body = json.loads(_error_response(404, "Not found", {}).body)

        assert body["error"]["details"] is None

    def test_request_id_follows_correlation_id(self):
        token = correlation_id_var.set("req-abc")
        try:
            body = json.loads(_error_response(401, "Invalid token").body)
        finally:
            correlation_id_var.reset(token)

        assert body["request_id"] == "req-abc"


class TestRequestSchemas:
    """Tests for request body validation."""

    def _register(self, **overrides):
        payload = {
            "email": "owner@example.com",
            "password": "Str0ng!Passw0rd",
            "first_name": "Olive",
            "last_name": "Owner",
            "organization_name": "Acme",
        }
        payload.update(overrides)
        return RegisterRequest(**payload)

    def test_email_is_lowercased_and_stripped(self):
        assert self._register(email="  Owner@Example.COM ").email == "owner@example.com"

    def test_zero_width_characters_are_removed(self):
        assert self._register(email="own\u200ber@example.com").email == "owner@example.com"

    @pytest.mark.parametrize(
        "email", ["not-an-email", "owner@localhost", "@example.com", "a b@example.com"]
    )
    def test_malformed_email_is_rejected(self, email):
        with pytest.raises(ValidationError):
            self._register(email=email)

    def test_blank_names_are_rejected(self):
        with pytest.raises(ValidationError):
            self._register(first_name="   ")

    def test_names_are_stripped(self):
        assert self._register(organization_name=" Acme ").organization_name == "Acme"

    def test_overlong_password_is_rejected(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="owner@example.com", password="x" * 129)
