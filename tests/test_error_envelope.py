"""Tests for the error envelope format and exception handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from kleroteria import app as app_module
from kleroteria.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
    service_error_response,
)
from kleroteria.api.schemas import Envelope, ErrorBody
from kleroteria.service.errors import (
    AuthenticationError,
    ConflictError,
    RejectedError,
    ServerError,
    ValidationError as ServiceValidationError,
)
from kleroteria.storage.errors import ConstraintViolation, StoreError


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Unauthorized")
        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Bad Request",
            details=[{"loc": ["body", "email"]}],
        )
        assert error.details == [{"loc": ["body", "email"]}]

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status_code,expected",
        [(400, "validation_error"), (401, "unauthorized"), (404, "not_found"), (409, "conflict")],
    )
    def test_known_statuses(self, status_code, expected):
        assert _error_code_for_status(status_code) == expected

    def test_unknown_status_is_server_error(self):
        assert 418 not in _STATUS_TO_CODE
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(409, "User already exists")
        body = json.loads(response.body)

        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {
            "code": "conflict",
            "message": "User already exists",
            "details": None,
        }
        assert body["request_id"]

    @pytest.mark.parametrize(
        "error,status_code,code",
        [
            (ServiceValidationError("All fields are required"), 400, "validation_error"),
            (RejectedError("Invalid or expired code"), 400, "rejected"),
            (AuthenticationError("Unauthorized"), 401, "unauthorized"),
            (ConflictError("User already exists"), 409, "conflict"),
            (ServerError("Internal Server Error"), 500, "server_error"),
        ],
    )
    def test_service_errors_keep_their_code(self, error, status_code, code):
        response = service_error_response(error)
        body = json.loads(response.body)

        assert response.status_code == status_code
        assert body["error"]["code"] == code
        assert body["error"]["message"] == error.message

    def test_service_error_detail_is_rendered(self):
        error = ServiceValidationError("Invalid email format", detail={"field": "email"})
        body = json.loads(service_error_response(error).body)

        assert body["error"]["details"] == {"field": "email"}


class TestHandlers:
    """Tests for handlers installed on the application."""

    def test_unknown_route_is_not_found(self, client):
        response = client.get("/api/users/nothing-here")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_wrong_method_is_not_found(self, client):
        response = client.get("/api/users/sign-in")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "not_found"

    def test_malformed_body_is_validation_error(self, client):
        response = client.post(
            "/api/users/sign-in",
            json={"email": "ada@example.com", "password": "x", "rememberMe": "sometimes"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["message"] == "Bad Request"
        assert isinstance(body["error"]["details"], list)

    def test_oversized_field_is_validation_error(self, client):
        response = client.post(
            "/api/users/sign-in",
            json={"email": "a" * 600 + "@example.com", "password": "secret1"},
        )

        assert response.status_code == 400

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/users/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_request_id_is_generated(self, client):
        response = client.get("/api/users/health")

        assert response.headers["X-Request-ID"]
        assert response.json()["request_id"] == response.headers["X-Request-ID"]

    def test_responses_are_not_cached(self, client):
        response = client.get("/api/users/health")

        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_health_reports_store(self, client):
        body = client.get("/api/users/health").json()
        assert body["data"] == {"status": "healthy", "store": "MemoryStore"}


class TestStoreErrorHandlers:
    """Storage errors escaping a route still render as envelopes."""

    @pytest.fixture
    def bare_client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/conflict")
        async def conflict():
            raise ConstraintViolation("duplicate key", {"field": "email"})

        @app.get("/broken")
        async def broken():
            raise StoreError("connection lost")

        @app.get("/boom")
        async def boom():
            raise RuntimeError("unexpected")

        return TestClient(app, raise_server_exceptions=False)

    def test_constraint_violation_is_conflict(self, bare_client):
        response = bare_client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_store_error_hides_details(self, bare_client):
        response = bare_client.get("/broken")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Internal Server Error"
        assert "connection lost" not in response.text

    def test_unhandled_exception_is_server_error(self, bare_client):
        response = bare_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
