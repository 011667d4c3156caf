"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from authgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
    service_error_response,
)
from authgate.api.schemas import Envelope, ErrorBody
from authgate.logging import set_correlation_id
from authgate.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    InvalidTokenError,
    MfaAlreadyEnabledError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from authgate.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_accept_dict_and_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"f": 1}).details == {"f": 1}
        assert len(ErrorBody(code="validation_error", message="x", details=[1, 2]).details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    @pytest.mark.parametrize(
        "code", ["invalid_credentials", "invalid_token", "account_locked", "rate_limited"]
    )
    def test_auth_specific_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_error_envelope(self):
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="no"))
        assert envelope.data is None
        assert envelope.error.code == "forbidden"

    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (503, "service_unavailable"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_body_and_headers(self):
        set_correlation_id("req-1")
        response = error_response(429, "slow down", headers={"Retry-After": "60"})
        body = json.loads(response.body)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert body["status"] == "error"
        assert body["error"]["code"] == "rate_limited"
        assert body["request_id"] == "req-1"

    def test_explicit_code_wins(self):
        body = json.loads(error_response(401, "bad", code="invalid_token").body)
        assert body["error"]["code"] == "invalid_token"


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentialsError(), 401, "invalid_credentials"),
            (InvalidTokenError(reason="expired"), 401, "invalid_token"),
            (AccountLockedError(), 403, "account_locked"),
            (NotFoundError("session not found"), 404, "not_found"),
            (MfaAlreadyEnabledError(), 409, "conflict"),
            (RateLimitedError(), 429, "rate_limited"),
            (ServerError("stored credential hash is unreadable"), 500, "server_error"),
            (ConstraintViolation("dup", {"field": "email"}), 409, "conflict"),
            (StoreUnavailable("db down"), 503, "service_unavailable"),
            (RedisConnectionError("redis down"), 503, "service_unavailable"),
        ],
    )
    def test_mapped_exceptions(self, exc, status, code):
        response = _app_raising(exc).get("/boom")
        assert response.status_code == status
        assert response.json()["error"]["code"] == code

    def test_token_reason_not_exposed(self):
        response = _app_raising(InvalidTokenError(reason="bad_signature")).get("/boom")
        assert "bad_signature" not in response.text

    def test_unexpected_exception_hides_details(self):
        response = _app_raising(RuntimeError("secret internals")).get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "An unexpected error occurred"
        assert "secret internals" not in response.text

    def test_rate_limited_carries_retry_after(self):
        response = _app_raising(RateLimitedError(retry_after=60)).get("/boom")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"]["message"] == "Rate limit exceeded. Please try again later."


class TestServiceErrorResponse:
    def test_rate_denial_merges_headers(self):
        set_correlation_id("req-2")
        response = service_error_response(
            RateLimitedError(retry_after=1), headers={"X-RateLimit-Limit": "20"}
        )
        body = json.loads(response.body)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "1"
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert body["error"]["code"] == "rate_limited"
        assert body["request_id"] == "req-2"

    def test_detail_rendered_as_details(self):
        exc = NotFoundError("session not found", detail={"session_id": "s-1"})
        body = json.loads(service_error_response(exc).body)
        assert body["error"]["details"] == {"session_id": "s-1"}
        assert "Retry-After" not in service_error_response(exc).headers
