"""
Telemetry service for structured logging and observability.

This module provides structured JSON logging with session correlation,
audit logging for session lifecycle events, and lightweight metrics
recorded as structured log entries.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional, Dict
from contextvars import ContextVar

# Correlation id for the conversation being worked on. Set by the manager
# and the HTTP layer so every log line can be tied back to a session.
session_id_var: ContextVar[str] = ContextVar("session_id", default="")


class JSONFormatter(logging.Formatter):
    """
    Custom log formatter that outputs logs in JSON format.

    Each log entry contains:
    - timestamp: ISO 8601 formatted UTC timestamp
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - message: The log message
    - logger: Name of the logger that produced the entry
    - session_id: Correlation ID of the conversation being handled

    Additional fields can be included via the 'extra_data' attribute
    on the log record.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as a JSON string.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted string containing the log entry
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "session_id": session_id_var.get(""),
        }

        if record.module:
            log_data["module"] = record.module
        if record.funcName and record.funcName != "<module>":
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        if hasattr(record, "extra_data") and record.extra_data:
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_data["stack_trace"] = record.stack_info

        return json.dumps(log_data, default=str)


class TelemetryService:
    """
    Centralized telemetry service for logging and metrics.

    This service provides:
    - Structured JSON logging with session correlation
    - Audit entries for session lifecycle operations
    - Custom metrics (cache hits, cleanup counts) as structured debug logs
    """

    def __init__(self, settings: Optional[Any] = None, configure_logging: bool = True):
        """
        Initialize the telemetry service.

        Args:
            settings: Application settings containing log_level and service_name
            configure_logging: Whether to install the JSON handler on the root logger
        """
        self.settings = settings
        self.service_name = getattr(settings, "service_name", "course-copilot")
        self._logger = logging.getLogger("telemetry")
        if configure_logging:
            self._setup_logging()

    def _setup_logging(self) -> None:
        """
        Configure structured JSON logging.

        Sets up the root logger with JSONFormatter and configures
        the log level based on settings.
        """
        log_level_str = "INFO"
        if self.settings and hasattr(self.settings, "log_level"):
            log_level_str = self.settings.log_level

        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        json_formatter = JSONFormatter()

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)

        # Remove existing handlers to avoid duplicate logs
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(log_level)
        stdout_handler.setFormatter(json_formatter)
        root_logger.addHandler(stdout_handler)

        self._logger.info("Telemetry service initialized", extra={
            "extra_data": {"log_level": log_level_str, "service_name": self.service_name}
        })

    def get_logger(self, name: str) -> logging.Logger:
        """
        Get a logger with the specified name.

        Args:
            name: Name for the logger (typically module name)

        Returns:
            Configured logger instance
        """
        return logging.getLogger(name)

    def log_audit_event(
        self,
        event_type: str,
        user_id: Optional[Any],
        resource_type: str,
        resource_id: Optional[str],
        action: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log an audit event for a session lifecycle operation.

        Args:
            event_type: Type of audit event (e.g., "session_created", "session_imported")
            user_id: ID of the user owning the session
            resource_type: Type of resource being acted upon
            resource_id: ID of the specific resource
            action: Action being performed (e.g., "create", "pause", "delete")
            details: Additional details about the event
        """
        audit_data = {
            "audit_event": True,
            "event_type": event_type,
            "user_id": user_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "action": action,
        }

        if details:
            audit_data["details"] = details

        self._logger.info(
            f"Audit: {event_type} - {action} on {resource_type}",
            extra={"extra_data": audit_data}
        )

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Record a custom metric.

        Args:
            name: Name of the metric
            value: Metric value
            tags: Optional tags for metric dimensions
        """
        metric_data = {
            "metric_name": name,
            "metric_value": value,
        }

        if tags:
            metric_data["tags"] = tags

        self._logger.debug(
            f"Metric: {name}={value}",
            extra={"extra_data": metric_data}
        )


# Global telemetry service instance
_telemetry_service: Optional[TelemetryService] = None


def get_telemetry_service() -> Optional[TelemetryService]:
    """
    Get the global telemetry service instance.

    Returns:
        The telemetry service instance, or None if not initialized
    """
    return _telemetry_service


def initialize_telemetry(settings: Optional[Any] = None) -> TelemetryService:
    """
    Initialize the global telemetry service.

    Args:
        settings: Application settings for configuration

    Returns:
        The initialized telemetry service
    """
    global _telemetry_service
    _telemetry_service = TelemetryService(settings)
    return _telemetry_service


def set_session_id(session_id: str) -> None:
    """
    Set the session correlation ID for the current context.

    Args:
        session_id: The session ID to set
    """
    session_id_var.set(session_id)


def get_session_id() -> str:
    """
    Get the current session correlation ID from context.

    Returns:
        The current session ID, or empty string if not set
    """
    return session_id_var.get("")
