"""
Exception classes for the course copilot conversation core.

This module provides the AppException base class, the session and
navigation exceptions raised by the lifecycle manager and the flow engine,
and convenience factory functions for the generic error types.

Every navigation exception carries actionable alternatives in ``details``
so a conversational caller can always offer the user a next step.
"""

from typing import Any, Optional

from errors.codes import ErrorCode, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all application-specific errors.

    This exception provides structured error information including:
    - error_code: A standardized error code from the ErrorCode enum
    - message: A human-readable error message
    - status_code: The HTTP status code to return
    - details: Optional additional context (e.g., available branches)

    Example:
        raise AppException(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Progress must be between 0 and 100",
            status_code=400,
            details={"field": "progress", "value": 140}
        )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        """
        Initialize an AppException.

        Args:
            error_code: The error code from the ErrorCode enum
            message: A human-readable error message
            status_code: The HTTP status code (defaults to the error code's default)
            details: Optional dictionary with additional error context
        """
        self.error_code = error_code
        self.message = message
        self.status_code = status_code or get_default_status_code(error_code)
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for JSON serialization.

        Returns:
            Dictionary containing error_code, message, and details
        """
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


class NotFoundError(AppException):
    """Raised when a session does not exist."""

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        error_code: ErrorCode = ErrorCode.SESSION_NOT_FOUND,
    ):
        super().__init__(error_code=error_code, message=message, details=details)


class TargetNotFoundError(NotFoundError):
    """
    Raised when a backtrack target is not present in the state history.

    ``details["available_states"]`` lists the states the caller can
    backtrack to instead.
    """

    def __init__(self, message: str, available_states: list[str],
                 suggestions: Optional[dict[str, str]] = None):
        details: dict[str, Any] = {"available_states": available_states}
        if suggestions:
            details["suggestions"] = suggestions
        super().__init__(
            message,
            details=details,
            error_code=ErrorCode.BACKTRACK_TARGET_NOT_FOUND,
        )
        self.available_states = available_states


class PersistenceError(AppException):
    """
    Raised when the session store fails to read or write a record.

    Persistence failures are surfaced to the caller and never retried
    internally.
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            error_code=ErrorCode.PERSISTENCE_ERROR,
            message=message,
            details=details,
        )


class SessionClosedError(AppException):
    """Raised when a completed or abandoned session would be changed in place."""

    def __init__(self, session_id: str, status: str, operation: str):
        super().__init__(
            error_code=ErrorCode.SESSION_CLOSED,
            message=f"Session '{session_id}' is {status} and cannot be {operation}",
            details={
                "session_id": session_id,
                "status": status,
                "operation": operation,
                "suggested_actions": [
                    {
                        "action": "create_session",
                        "message": "Start a new session or import an export of this one",
                    }
                ],
            },
        )
        self.session_id = session_id
        self.status = status


class SessionConflictError(AppException):
    """Raised when a session identifier is already taken."""

    def __init__(self, session_id: str):
        super().__init__(
            error_code=ErrorCode.SESSION_CONFLICT,
            message=f"Session '{session_id}' already exists",
            details={
                "session_id": session_id,
                "suggested_actions": [
                    {"action": "overwrite", "message": "Re-import with overwrite enabled"},
                    {"action": "new_id", "message": "Import under a freshly generated id"},
                ],
            },
        )
        self.session_id = session_id


class InvalidBranchError(AppException):
    """
    Raised when a requested branch is not among the enumerated next states.

    ``details["available_branches"]`` holds the branches that are legal.
    """

    def __init__(self, target: str, current_state: str,
                 available_branches: list[dict[str, Any]]):
        super().__init__(
            error_code=ErrorCode.INVALID_BRANCH,
            message=f"Cannot move from '{current_state}' to '{target}'",
            details={
                "requested_state": target,
                "current_state": current_state,
                "available_branches": available_branches,
            },
        )
        self.available_branches = available_branches


class PrerequisitesNotMetError(AppException):
    """
    Raised when a branch target's prerequisites are missing from the context.

    ``details["suggested_actions"]`` tells the caller how to gather them.
    """

    def __init__(self, target: str, missing_prerequisites: list[str],
                 suggested_actions: list[dict[str, Any]]):
        super().__init__(
            error_code=ErrorCode.PREREQUISITES_NOT_MET,
            message=f"Prerequisites for '{target}' are not met",
            details={
                "requested_state": target,
                "missing_prerequisites": missing_prerequisites,
                "suggested_actions": suggested_actions,
            },
        )
        self.missing_prerequisites = missing_prerequisites
        self.suggested_actions = suggested_actions


class InvalidImportError(AppException):
    """Raised when an import document fails validation."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(
            error_code=ErrorCode.INVALID_IMPORT,
            message=message,
            details={"errors": errors or []},
        )


# Convenience factory functions for common error types

def validation_error(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a validation error exception."""
    return AppException(
        error_code=ErrorCode.VALIDATION_ERROR,
        message=message,
        details=details
    )


def invalid_request(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an invalid request exception."""
    return AppException(
        error_code=ErrorCode.INVALID_REQUEST,
        message=message,
        details=details
    )


def session_not_found(session_id: str) -> NotFoundError:
    """Create a session not found exception."""
    return NotFoundError(
        f"Session '{session_id}' not found",
        details={"session_id": session_id},
    )


def session_store_unavailable(
    message: str = "Session store unavailable",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a session store unavailable exception."""
    return AppException(
        error_code=ErrorCode.SESSION_STORE_UNAVAILABLE,
        message=message,
        details=details
    )
