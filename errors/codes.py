"""
Error code catalog for the course copilot conversation core.

This module defines all error codes used throughout the application,
covering request validation, session lookup, navigation (branching and
backtracking), persistence failures and internal errors.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used in the application.

    Each error code maps to a specific HTTP status code and error category:
    - Validation errors (4xx): Client request issues
    - Session errors (4xx): Missing, closed or conflicting sessions
    - Navigation errors (4xx): Illegal branch or backtrack requests
    - Storage errors (5xx): Session store failures
    - Internal errors (5xx): Server-side issues
    """

    # Validation errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Request payload validation failed (HTTP 400)"""

    INVALID_REQUEST = "INVALID_REQUEST"
    """Malformed request structure (HTTP 400)"""

    INVALID_IMPORT = "INVALID_IMPORT"
    """Import document is malformed or has an unsupported version (HTTP 422)"""

    # Session errors (4xx)
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    """Requested session does not exist (HTTP 404)"""

    SESSION_CONFLICT = "SESSION_CONFLICT"
    """A session with the same identifier already exists (HTTP 409)"""

    SESSION_CLOSED = "SESSION_CLOSED"
    """Session is completed or abandoned and cannot be changed (HTTP 409)"""

    # Navigation errors (4xx)
    INVALID_BRANCH = "INVALID_BRANCH"
    """Requested branch is not a legal next state (HTTP 422)"""

    PREREQUISITES_NOT_MET = "PREREQUISITES_NOT_MET"
    """Branch prerequisites are missing from the session context (HTTP 422)"""

    BACKTRACK_TARGET_NOT_FOUND = "BACKTRACK_TARGET_NOT_FOUND"
    """Backtrack target is not present in the state history (HTTP 404)"""

    # Storage errors (5xx)
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    """A session store read or write failed (HTTP 500)"""

    SESSION_STORE_UNAVAILABLE = "SESSION_STORE_UNAVAILABLE"
    """Redis or the in-memory store is unreachable (HTTP 503)"""

    # Internal errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_IMPORT: 422,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.SESSION_CONFLICT: 409,
    ErrorCode.SESSION_CLOSED: 409,
    ErrorCode.INVALID_BRANCH: 422,
    ErrorCode.PREREQUISITES_NOT_MET: 422,
    ErrorCode.BACKTRACK_TARGET_NOT_FOUND: 404,
    ErrorCode.PERSISTENCE_ERROR: 500,
    ErrorCode.SESSION_STORE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
