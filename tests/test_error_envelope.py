"""Tests for the error envelope format and error handling.

Error responses share one envelope:
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
from pydantic import ValidationError

from pairauth.api.error_handling import (
    UNAUTHORIZED_MESSAGE,
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    unauthorized_response,
)
from pairauth.api.schemas import Envelope, ErrorBody
from pairauth.service.errors import (
    AuthenticationError,
    InvalidRefreshPair,
    MissingCredential,
    PairMismatch,
    Revoked,
    StoreUnavailable,
)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize("status_code", sorted(_STATUS_TO_CODE))
    def test_every_mapped_status_builds_an_envelope(self, status_code):
        response = _error_response(status_code, "message")
        body = json.loads(response.body)

        assert response.status_code == status_code
        assert body["status"] == "error"
        assert body["error"]["code"] == _STATUS_TO_CODE[status_code]
        assert body["request_id"]

    def test_unmapped_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_unauthorized_response_is_generic(self):
        response = unauthorized_response()
        body = json.loads(response.body)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert body["error"] == {
            "code": "unauthorized",
            "message": UNAUTHORIZED_MESSAGE,
            "details": None,
        }


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc, reason",
        [
            (MissingCredential(), "missing_credential"),
            (Revoked(), "revoked"),
            (InvalidRefreshPair(), "invalid_refresh_pair"),
            (InvalidRefreshPair(reason="refresh_token_expired"), "refresh_token_expired"),
            (PairMismatch("subject"), "pair_mismatch:subject"),
        ],
    )
    def test_rejections_carry_reasons(self, exc, reason):
        assert isinstance(exc, AuthenticationError)
        assert exc.status_code == 401
        assert exc.error_code == "unauthorized"
        assert exc.reason == reason

    def test_store_unavailable_is_503(self):
        exc = StoreUnavailable("redis down", store="credentials")

        assert exc.status_code == 503
        assert exc.error_code == "service_unavailable"
        assert exc.detail["store"] == "credentials"
        assert not isinstance(exc, AuthenticationError)
