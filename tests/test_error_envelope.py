"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "data": null,
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

from admincore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from admincore.api.schemas import Envelope, ErrorBody
from admincore.logging import sanitize_error_message, set_correlation_id
from admincore.service import errors as service_errors


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_every_service_error_code_is_valid(self):
        """Each service exception's code renders without validation failure."""
        for name in service_errors.__all__:
            exc_type = getattr(service_errors, name)
            ErrorBody(code=exc_type.error_code, message=name)


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id


class TestStatusCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    """Tests for the rendered JSONResponse."""

    def test_response_shape(self):
        response = _error_response(404, "menu not found", {"menu_id": "m1"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {
            "code": "not_found",
            "message": "menu not found",
            "details": {"menu_id": "m1"},
        }

    def test_explicit_code_wins(self):
        response = _error_response(403, "account is locked", code="account_locked")

        assert json.loads(response.body)["error"]["code"] == "account_locked"

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("req-123")

        response = _error_response(400, "bad input")

        assert json.loads(response.body)["request_id"] == "req-123"

    def test_unauthorized_sets_bearer_challenge(self):
        response = _error_response(401, "invalid token", code="token_invalid")

        assert response.headers["www-authenticate"] == "Bearer"

    def test_forbidden_has_no_challenge(self):
        response = _error_response(403, "nope")

        assert "www-authenticate" not in response.headers


class TestSanitizeErrorMessage:
    """Tests for scrubbing storage internals out of client-facing messages."""

    def test_sql_fragment_redacted(self):
        message = sanitize_error_message("duplicate key: INSERT INTO admin_user VALUES")

        assert "admin_user" not in message
        assert "[redacted]" in message

    def test_plain_message_untouched(self):
        assert sanitize_error_message("role name already exists") == "role name already exists"

    def test_empty_message(self):
        assert sanitize_error_message("") == "An error occurred"
