"""Tests for global exception handlers.

Validates that all exception types are handled consistently with
proper HTTP status codes, error format, and no information leakage.
"""

import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from donation_guard.core.errors import (
    AppError,
    AuditWriteError,
    AuthenticationAppError,
    RateLimitAppError,
    ValidationAppError,
)
from donation_guard.core.exception_handlers import general_exception_handler, setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    @pytest.mark.parametrize(
        "error, status_code",
        [
            (ValidationAppError(code="invalid_amount", message="Amount must be positive"), 400),
            (AuthenticationAppError(code="missing_api_key", message="API key required"), 401),
            (RateLimitAppError(code="rate_limit_exceeded", message="Too many requests"), 429),
            (AuditWriteError(code="audit_write_failed", message="Failed to persist"), 500),
            (AppError(code="unclassified", message="Something broke"), 500),
        ],
    )
    def test_status_mapping(
        self, client: TestClient, app_with_handlers: FastAPI, error: AppError, status_code: int
    ):
        @app_with_handlers.get("/test-error")
        async def test_endpoint():
            raise error

        response = client.get("/test-error")

        assert response.status_code == status_code
        data = response.json()
        assert data["error"]["code"] == error.code
        assert data["error"]["message"] == error.message
        assert "request_id" in data["error"]

    def test_details_included_when_provided(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-details")
        async def test_endpoint():
            raise ValidationAppError(
                code="audit_entry_invalid",
                message="Missing required audit log fields",
                details={"missing_fields": ["category"]},
            )

        data = client.get("/test-details").json()

        assert data["error"]["details"] == {"missing_fields": ["category"]}

    def test_details_omitted_when_empty(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-no-details")
        async def test_endpoint():
            raise ValidationAppError(code="test", message="test")

        data = client.get("/test-no-details").json()

        assert "details" not in data["error"]

    def test_rate_limit_error_carries_headers(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-rate-limit")
        async def test_endpoint():
            raise RateLimitAppError(
                code="rate_limit_exceeded",
                message="Too many requests",
                headers={"Retry-After": "30", "X-RateLimit-Remaining": "0"},
            )

        response = client.get("/test-rate-limit")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.headers["X-RateLimit-Remaining"] == "0"


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    async def test_general_exception_handler_logic(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = RuntimeError("Unexpected error: database connection failed")
        response = await general_exception_handler(request, exc)

        data = json.loads(bytes(response.body).decode())
        assert response.status_code == 500
        assert data["error"]["code"] == "internal_server_error"
        assert "database connection" not in data["error"]["message"]
        assert "request_id" in data["error"]
        assert request.state.error_code == "internal_server_error"

    async def test_general_exception_handler_never_leaks_stack_trace(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        response = await general_exception_handler(request, ValueError("Test error with details"))

        response_text = bytes(response.body).decode()
        assert "Traceback" not in response_text
        assert "ValueError" not in response_text

    def test_unhandled_error_renders_500(self, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-crash")
        async def test_endpoint():
            raise RuntimeError("boom")

        client = TestClient(app_with_handlers, raise_server_exceptions=False)
        response = client.get("/test-crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_server_error"


def test_setup_exception_handlers_registers_handlers(app_with_handlers: FastAPI):
    assert AppError in app_with_handlers.exception_handlers
    assert Exception in app_with_handlers.exception_handlers
