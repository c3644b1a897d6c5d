"""
Error handling module for the course copilot conversation core.

This module provides structured error handling with:
- ErrorCode enum for standardized error codes
- AppException and the session/navigation exception hierarchy
- Error response models for consistent API responses
- Exception handlers for FastAPI integration
"""

from errors.codes import ErrorCode
from errors.exceptions import (
    AppException,
    InvalidBranchError,
    InvalidImportError,
    NotFoundError,
    PersistenceError,
    PrerequisitesNotMetError,
    SessionClosedError,
    SessionConflictError,
    TargetNotFoundError,
)
from errors.handlers import (
    ErrorResponse,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "InvalidBranchError",
    "InvalidImportError",
    "NotFoundError",
    "PersistenceError",
    "PrerequisitesNotMetError",
    "SessionClosedError",
    "SessionConflictError",
    "TargetNotFoundError",
    "ErrorResponse",
    "handle_app_exception",
    "handle_unexpected_exception",
    "register_exception_handlers",
]
