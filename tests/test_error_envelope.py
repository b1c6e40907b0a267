"""Tests for the error envelope format and exception-to-response mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from sessionvault.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from sessionvault.api.schemas import Envelope, ErrorBody
from sessionvault.service import errors as service_errors
from sessionvault.storage.errors import (
    DuplicateFingerprint,
    StoreUnavailable,
    UniqueConstraintViolation,
)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_unknown_code_is_rejected(self):
        """Only stable codes may reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="refresh_expired", message="refresh token has expired"),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "refresh_expired"
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert "request_id" in data

    def test_error_response_custom_code(self):
        response = _error_response(401, "refresh token is invalid", code="refresh_reuse_or_invalid")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "refresh_reuse_or_invalid"


def _raising_app(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (service_errors.AlreadyExists("taken"), 409, "already_exists"),
        (service_errors.IdentityNotFound("missing"), 404, "not_found"),
        (service_errors.InvalidCredentials("nope"), 401, "invalid_credentials"),
        (service_errors.WrongAuthMethod("google only"), 400, "wrong_auth_method"),
        (service_errors.InvalidFederatedToken("bad"), 401, "invalid_federated_token"),
        (service_errors.FederatedClaimsIncomplete("no email"), 400, "federated_claims_incomplete"),
        (service_errors.RefreshReuseOrInvalid("reused"), 401, "refresh_reuse_or_invalid"),
        (service_errors.RefreshExpired("expired"), 401, "refresh_expired"),
        (service_errors.SessionPersistFailed("db"), 500, "session_persist_failed"),
        (service_errors.InternalAuthError("mismatch"), 500, "server_error"),
        (service_errors.FederatedProviderUnavailable("certs down"), 503, "service_unavailable"),
    ],
)
def test_service_errors_map_to_stable_codes(exc, status, code):
    resp = _raising_app(exc).get("/boom")
    assert resp.status_code == status
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code


def test_server_errors_hide_details():
    exc = service_errors.SessionPersistFailed(
        "session could not be recorded", detail={"table": "refresh_token"}
    )
    body = _raising_app(exc).get("/boom").json()
    assert body["error"]["details"] is None


def test_client_errors_keep_details():
    exc = service_errors.WrongAuthMethod("google only", detail={"provider": "google"})
    body = _raising_app(exc).get("/boom").json()
    assert body["error"]["details"] == {"provider": "google"}


@pytest.mark.parametrize(
    "exc",
    [UniqueConstraintViolation("email already exists"), DuplicateFingerprint("duplicate")],
)
def test_constraint_violations_are_conflicts(exc):
    resp = _raising_app(exc).get("/boom")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_store_unavailable_is_503():
    resp = _raising_app(StoreUnavailable("connection refused")).get("/boom")
    assert resp.status_code == 503
    assert resp.json()["error"]["message"] == "service temporarily unavailable"


def test_unhandled_exception_is_opaque_500():
    resp = _raising_app(RuntimeError("secret internals")).get("/boom")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "server_error"
    assert "secret internals" not in resp.text
