"""Tests for the JSON error envelope produced for auth-core errors.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|null>},
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from wealthvault.api.error_handling import register_exception_handlers
from wealthvault.api.schemas import Envelope, ErrorBody
from wealthvault.service.errors import (
    GENERIC_AUTH_FAILURE,
    ErrorKind,
    InvalidCredentialsError,
    InvalidMFATokenError,
    MFARequiredError,
    RecoveryCodeConsumedError,
    RevokedTokenError,
    ServiceUnavailableError,
    SessionNotFoundError,
)
from wealthvault.storage.errors import StoreUnavailable


def _app(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    def test_every_error_kind_is_a_valid_code(self):
        for kind in ErrorKind:
            assert ErrorBody(code=kind.value, message="x").code == kind.value

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")

    def test_envelope_gets_request_id(self):
        envelope = Envelope(status="error", error=ErrorBody(code="not_found", message="x"))
        assert envelope.request_id


class TestServiceErrorMapping:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentialsError("wrong password for ada"), 401, "invalid_credentials"),
            (InvalidMFATokenError("totp mismatch"), 401, "invalid_mfa_token"),
            (MFARequiredError("mfa code required"), 401, "mfa_required"),
            (RevokedTokenError("blacklisted"), 401, "revoked_token"),
            (SessionNotFoundError("session not found", detail={"session_id": "s1"}), 404, "session_not_found"),
            (RecoveryCodeConsumedError("used"), 409, "recovery_code_consumed"),
            (ServiceUnavailableError("store timed out during get_session"), 503, "service_unavailable"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        response = _app(exc).get("/boom")

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["request_id"]

    def test_auth_failures_hide_internal_reason(self):
        response = _app(InvalidCredentialsError("wrong password for ada")).get("/boom")
        error = response.json()["error"]
        assert error["message"] == GENERIC_AUTH_FAILURE
        assert error["details"] is None

    def test_revoked_and_mfa_required_are_distinguishable(self):
        revoked = _app(RevokedTokenError("blacklisted")).get("/boom").json()["error"]
        mfa = _app(MFARequiredError("mfa code required")).get("/boom").json()["error"]
        assert revoked["message"] != mfa["message"] != GENERIC_AUTH_FAILURE

    def test_service_unavailable_is_retryable(self):
        response = _app(ServiceUnavailableError("store timed out")).get("/boom")
        assert response.headers["retry-after"] == "1"
        assert response.json()["error"]["message"] == "service temporarily unavailable"

    def test_not_found_keeps_details(self):
        exc = SessionNotFoundError("session not found", detail={"session_id": "s1"})
        error = _app(exc).get("/boom").json()["error"]
        assert error["details"] == {"session_id": "s1"}


class TestOtherErrors:
    def test_raw_store_unavailable(self):
        response = _app(StoreUnavailable("refused", operation="ping")).get("/boom")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_http_exception(self):
        response = _app(HTTPException(status_code=404, detail="nope")).get("/boom")
        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "not_found"
        assert error["message"] == "nope"

    def test_unhandled_exception(self):
        response = _app(RuntimeError("kaboom")).get("/boom")
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert "kaboom" not in error["message"]
