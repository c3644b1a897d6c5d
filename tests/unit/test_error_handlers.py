"""
Unit tests for error handlers and the exception catalog.

Tests the error response model, the exception handlers and the session
and navigation exceptions to ensure they produce correctly structured
responses with actionable details.
"""

import json

import pytest
from unittest.mock import MagicMock
from fastapi import Request
from fastapi.responses import JSONResponse

from errors.codes import ErrorCode, get_default_status_code
from errors.exceptions import (
    AppException,
    InvalidBranchError,
    InvalidImportError,
    PersistenceError,
    PrerequisitesNotMetError,
    SessionClosedError,
    SessionConflictError,
    TargetNotFoundError,
    session_not_found,
)
from errors.handlers import (
    ErrorResponse,
    get_request_id,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)


def make_request(request_id="test-request-id", path="/api/sessions", method="GET"):
    request = MagicMock(spec=Request)
    request.state.request_id = request_id
    request.url.path = path
    request.method = method
    return request


class TestErrorResponse:
    """Tests for the ErrorResponse model."""

    def test_error_response_with_all_fields(self):
        response = ErrorResponse(
            error_code="INVALID_BRANCH",
            message="Cannot move",
            details={"available_branches": []},
            request_id="req-123",
        )

        assert response.error_code == "INVALID_BRANCH"
        assert response.details == {"available_branches": []}
        assert response.request_id == "req-123"

    def test_error_response_model_dump_excludes_none(self):
        """Test that model_dump excludes None values when specified."""
        response = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An error occurred",
            request_id="req-789",
        )

        dumped = response.model_dump(exclude_none=True)
        assert "details" not in dumped
        assert dumped["request_id"] == "req-789"


class TestGetRequestId:
    """Tests for the get_request_id function."""

    def test_get_request_id_from_state(self):
        request = MagicMock(spec=Request)
        request.state.request_id = "existing-request-id"

        assert get_request_id(request) == "existing-request-id"

    def test_get_request_id_generates_uuid_when_not_set(self):
        request = MagicMock(spec=Request)
        del request.state.request_id

        result = get_request_id(request)

        assert len(result) == 36
        assert result.count("-") == 4


class TestErrorCodes:

    @pytest.mark.parametrize("code,status", [
        (ErrorCode.SESSION_NOT_FOUND, 404),
        (ErrorCode.SESSION_CONFLICT, 409),
        (ErrorCode.SESSION_CLOSED, 409),
        (ErrorCode.INVALID_BRANCH, 422),
        (ErrorCode.PREREQUISITES_NOT_MET, 422),
        (ErrorCode.BACKTRACK_TARGET_NOT_FOUND, 404),
        (ErrorCode.PERSISTENCE_ERROR, 500),
        (ErrorCode.SESSION_STORE_UNAVAILABLE, 503),
    ])
    def test_default_status_codes(self, code, status):
        assert get_default_status_code(code) == status

    def test_every_code_has_a_status(self):
        for code in ErrorCode:
            assert 400 <= get_default_status_code(code) < 600


class TestExceptionCatalog:
    """The session and navigation exceptions carry alternatives in details."""

    def test_invalid_branch_lists_available_branches(self):
        branches = [{"state": "template_selection"}, {"state": "requirements_gathering"}]
        exc = InvalidBranchError("publication", "welcome", branches)

        assert exc.error_code == ErrorCode.INVALID_BRANCH
        assert exc.status_code == 422
        assert exc.details["available_branches"] == branches
        assert exc.details["requested_state"] == "publication"

    def test_prerequisites_error_carries_suggested_actions(self):
        actions = [{"action": "collect_field", "field": "title"}]
        exc = PrerequisitesNotMetError("structure_generation", ["title"], actions)

        assert exc.details["missing_prerequisites"] == ["title"]
        assert exc.details["suggested_actions"] == actions

    def test_target_not_found_lists_available_states(self):
        exc = TargetNotFoundError("missing", available_states=["welcome"],
                                  suggestions={"restart": "Start over"})

        assert exc.error_code == ErrorCode.BACKTRACK_TARGET_NOT_FOUND
        assert exc.status_code == 404
        assert exc.details == {
            "available_states": ["welcome"],
            "suggestions": {"restart": "Start over"},
        }

    def test_session_closed_suggests_new_session(self):
        exc = SessionClosedError("s1", "completed", "paused")

        assert "completed" in exc.message
        assert exc.details["suggested_actions"][0]["action"] == "create_session"

    def test_conflict_and_import_errors(self):
        assert SessionConflictError("s1").status_code == 409
        exc = InvalidImportError("bad", errors=["export_version: wrong"])
        assert exc.details == {"errors": ["export_version: wrong"]}

    def test_session_not_found_factory(self):
        exc = session_not_found("s1")

        assert exc.error_code == ErrorCode.SESSION_NOT_FOUND
        assert exc.details == {"session_id": "s1"}

    def test_to_dict_omits_missing_details(self):
        exc = PersistenceError("Store down")

        assert exc.to_dict() == {"error_code": "PERSISTENCE_ERROR", "message": "Store down"}


class TestHandleAppException:
    """Tests for the handle_app_exception handler."""

    @pytest.mark.asyncio
    async def test_handle_app_exception_returns_json_response(self):
        exc = AppException(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Validation failed",
            details={"field": "name"},
        )

        response = await handle_app_exception(make_request(), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_handle_app_exception_includes_all_fields(self):
        """Test that response includes error_code, message, details, and request_id."""
        exc = session_not_found("mpcc_session_x")

        response = await handle_app_exception(make_request(method="POST"), exc)
        data = json.loads(response.body.decode("utf-8"))

        assert response.status_code == 404
        assert data["error_code"] == "SESSION_NOT_FOUND"
        assert data["message"] == "Session 'mpcc_session_x' not found"
        assert data["details"] == {"session_id": "mpcc_session_x"}
        assert data["request_id"] == "test-request-id"

    @pytest.mark.asyncio
    async def test_handle_app_exception_uses_explicit_status_code(self):
        exc = AppException(
            error_code=ErrorCode.INVALID_REQUEST,
            message="Gone",
            status_code=410,
        )

        response = await handle_app_exception(make_request(), exc)

        assert response.status_code == 410


class TestHandleUnexpectedException:
    """Tests for the handle_unexpected_exception handler."""

    @pytest.mark.asyncio
    async def test_handle_unexpected_exception_returns_500(self):
        response = await handle_unexpected_exception(
            make_request(), ValueError("Something went wrong internally")
        )

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_handle_unexpected_exception_hides_internal_details(self):
        """Test that internal error details are not exposed to client."""
        exc = RuntimeError("redis://:secret-password@cache:6379/0 refused connection")

        response = await handle_unexpected_exception(make_request(method="POST"), exc)
        data = json.loads(response.body.decode("utf-8"))

        assert "secret-password" not in data["message"]
        assert data["error_code"] == "INTERNAL_ERROR"
        assert "unexpected error" in data["message"].lower()
        assert data["request_id"] == "test-request-id"
        assert "details" not in data


class TestRegisterExceptionHandlers:
    """Tests for the register_exception_handlers function."""

    def test_register_exception_handlers_adds_handlers(self):
        mock_app = MagicMock()

        register_exception_handlers(mock_app)

        assert mock_app.add_exception_handler.call_count == 2
        exception_types = [call[0][0] for call in mock_app.add_exception_handler.call_args_list]
        assert AppException in exception_types
        assert Exception in exception_types
