"""
Unit tests for the error taxonomy and its HTTP handlers.

Tests the session-layer exceptions, the error response model and the
exception handlers to ensure they produce correctly structured responses.
"""

import json
import logging

import pytest
from unittest.mock import MagicMock
from fastapi import Request
from fastapi.responses import JSONResponse

from errors.codes import ErrorCode, get_default_status_code
from errors.exceptions import (
    AppException,
    CapacityExceeded,
    LockTimeout,
    SessionAbsent,
    StorageError,
    validation_error,
)
from errors.handlers import (
    RETRY_AFTER_SECONDS,
    ErrorResponse,
    get_request_id,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)


def make_request(request_id: str = "test-request-id", method: str = "GET") -> MagicMock:
    request = MagicMock(spec=Request)
    request.state.request_id = request_id
    request.url.path = "/api/sessions/stats"
    request.method = method
    return request


def body_of(response: JSONResponse) -> dict:
    return json.loads(response.body.decode("utf-8"))


class TestSessionExceptions:
    """Tests for the typed session-layer exceptions."""

    def test_storage_error_carries_key(self):
        exc = StorageError("Redis unreachable", key="user:U1:thread:T1:session", operation="get")

        assert exc.error_code == ErrorCode.SESSION_STORE_UNAVAILABLE
        assert exc.status_code == 503
        assert exc.key == "user:U1:thread:T1:session"
        assert exc.details == {"key": "user:U1:thread:T1:session", "operation": "get"}
        assert exc.retryable is False

    def test_lock_timeout_is_retryable(self):
        exc = LockTimeout("lock:session:U1:T1", attempts=7, waited_seconds=10.0004)

        assert exc.error_code == ErrorCode.SESSION_BUSY
        assert exc.status_code == 409
        assert exc.retryable is True
        assert exc.details["waited_seconds"] == 10.0
        assert exc.to_dict()["retryable"] is True

    def test_capacity_exceeded_is_not_retryable(self):
        exc = CapacityExceeded("U1", limit=50, current=50)

        assert exc.status_code == 429
        assert exc.retryable is False
        assert exc.details == {"user_id": "U1", "limit": 50, "current": 50}

    def test_session_absent(self):
        exc = SessionAbsent("U1", "T1")

        assert exc.error_code == ErrorCode.SESSION_NOT_FOUND
        assert exc.status_code == 404

    def test_validation_error_factory(self):
        exc = validation_error("bad id", details={"field": "user_id"})

        assert exc.error_code == ErrorCode.VALIDATION_ERROR
        assert exc.status_code == 400
        assert exc.to_dict() == {
            "error_code": "VALIDATION_ERROR",
            "message": "bad id",
            "retryable": False,
            "details": {"field": "user_id"},
        }

    def test_every_error_code_has_a_status(self):
        for code in ErrorCode:
            assert 400 <= get_default_status_code(code) < 600


class TestErrorResponse:
    """Tests for the ErrorResponse model."""

    def test_error_response_with_all_fields(self):
        response = ErrorResponse(
            error_code="SESSION_BUSY",
            message="Session is busy",
            retryable=True,
            details={"key": "lock:session:U1:T1"},
            request_id="req-123",
        )

        assert response.retryable is True
        assert response.details == {"key": "lock:session:U1:T1"}

    def test_error_response_model_dump_excludes_none(self):
        response = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An error occurred",
            request_id="req-789",
        )

        dumped = response.model_dump(exclude_none=True)
        assert "details" not in dumped
        assert dumped["retryable"] is False
        assert dumped["request_id"] == "req-789"


class TestGetRequestId:
    """Tests for the get_request_id function."""

    def test_get_request_id_from_state(self):
        assert get_request_id(make_request("existing-request-id")) == "existing-request-id"

    def test_get_request_id_generates_uuid_when_not_set(self):
        request = MagicMock(spec=Request)
        del request.state.request_id

        result = get_request_id(request)

        assert len(result) == 36
        assert result.count("-") == 4


class TestHandleAppException:
    """Tests for the handle_app_exception handler."""

    @pytest.mark.asyncio
    async def test_handle_app_exception_includes_all_fields(self):
        exc = SessionAbsent("U1", "T1")

        response = await handle_app_exception(make_request(), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        data = body_of(response)
        assert data["error_code"] == "SESSION_NOT_FOUND"
        assert data["retryable"] is False
        assert data["details"] == {"user_id": "U1", "thread_id": "T1"}
        assert data["request_id"] == "test-request-id"

    @pytest.mark.asyncio
    async def test_busy_session_sets_retry_after(self):
        exc = LockTimeout("lock:session:U1:T1", attempts=3, waited_seconds=1.2)

        response = await handle_app_exception(make_request(method="POST"), exc)

        assert response.status_code == 409
        assert response.headers["Retry-After"] == str(RETRY_AFTER_SECONDS)
        assert body_of(response)["retryable"] is True

    @pytest.mark.asyncio
    async def test_capacity_exceeded_has_no_retry_after(self):
        response = await handle_app_exception(make_request(), CapacityExceeded("U1", 2, 2))

        assert response.status_code == 429
        assert "retry-after" not in response.headers

    @pytest.mark.asyncio
    async def test_explicit_status_code_wins(self):
        exc = AppException(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Unprocessable",
            status_code=422,
        )

        response = await handle_app_exception(make_request(), exc)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_storage_outage_is_logged_as_error(self, caplog):
        exc = StorageError("Redis unreachable", key="user:U1:thread:T1:session", operation="get")

        with caplog.at_level(logging.WARNING, logger="errors.handlers"):
            response = await handle_app_exception(make_request(), exc)

        assert response.status_code == 503
        assert "retry-after" not in response.headers
        assert [r.levelno for r in caplog.records] == [logging.ERROR]

    @pytest.mark.asyncio
    async def test_client_error_is_logged_as_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="errors.handlers"):
            await handle_app_exception(make_request(), SessionAbsent("U1", "T1"))

        assert [r.levelno for r in caplog.records] == [logging.WARNING]


class TestHandleUnexpectedException:
    """Tests for the handle_unexpected_exception handler."""

    @pytest.mark.asyncio
    async def test_handle_unexpected_exception_returns_500(self):
        response = await handle_unexpected_exception(make_request(), ValueError("boom"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_handle_unexpected_exception_hides_internal_details(self):
        exc = RuntimeError("redis://:s3cret@cache.internal:6379 refused")

        response = await handle_unexpected_exception(make_request("req-9", "POST"), exc)

        data = body_of(response)
        assert "s3cret" not in data["message"]
        assert "cache.internal" not in data["message"]
        assert data["error_code"] == "INTERNAL_ERROR"
        assert "unexpected error" in data["message"].lower()
        assert data["request_id"] == "req-9"
        assert data.get("details") is None


class TestRegisterExceptionHandlers:
    """Tests for the register_exception_handlers function."""

    def test_register_exception_handlers_adds_handlers(self):
        mock_app = MagicMock()

        register_exception_handlers(mock_app)

        exception_types = [call[0][0] for call in mock_app.add_exception_handler.call_args_list]
        assert exception_types == [AppException, Exception]
