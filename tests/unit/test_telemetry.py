"""
Unit tests for structured logging, audit entries and metrics.
"""

import json
import logging
import sys
from types import SimpleNamespace

import pytest

import telemetry.service as telemetry_module
from telemetry.service import (
    JSONFormatter,
    TelemetryService,
    get_session_id,
    session_id_var,
    set_session_id,
)


@pytest.fixture
def correlation():
    token = session_id_var.set("")
    yield
    session_id_var.reset(token)


@pytest.fixture
def root_logger():
    """Restore the root logger after a test reconfigures it."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(message="Session saved", level=logging.INFO, **attrs):
    record = logging.LogRecord(
        name="session.manager",
        level=level,
        pathname=__file__,
        lineno=42,
        msg=message,
        args=(),
        exc_info=None,
        func="save",
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_core_fields(self, correlation):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["message"] == "Session saved"
        assert data["level"] == "INFO"
        assert data["logger"] == "session.manager"
        assert data["function"] == "save"
        assert data["line"] == 42
        assert data["session_id"] == ""
        assert data["timestamp"].endswith("Z")

    def test_extra_data_is_merged(self, correlation):
        record = make_record(extra_data={"session_id": "mpcc_session_x", "progress": 20})

        data = json.loads(JSONFormatter().format(record))

        assert data["session_id"] == "mpcc_session_x"
        assert data["progress"] == 20

    def test_correlation_id_from_context(self, correlation):
        set_session_id("mpcc_session_ctx")

        data = json.loads(JSONFormatter().format(make_record()))

        assert data["session_id"] == "mpcc_session_ctx"
        assert get_session_id() == "mpcc_session_ctx"

    def test_exception_is_rendered(self, correlation):
        try:
            raise ValueError("broken record")
        except ValueError:
            record = make_record(level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: broken record" in data["exception"]

    def test_unserialisable_values_fall_back_to_str(self, correlation):
        record = make_record(extra_data={"state": object()})

        data = json.loads(JSONFormatter().format(record))

        assert data["state"].startswith("<object object")


class TestTelemetryService:

    def test_audit_event(self, caplog):
        service = TelemetryService(configure_logging=False)

        with caplog.at_level(logging.INFO, logger="telemetry"):
            service.log_audit_event(
                event_type="session_created",
                user_id=42,
                resource_type="session",
                resource_id="mpcc_session_a",
                action="create",
                details={"state": "welcome"},
            )

        record = caplog.records[-1]
        assert record.getMessage() == "Audit: session_created - create on session"
        assert record.extra_data["audit_event"] is True
        assert record.extra_data["user_id"] == 42
        assert record.extra_data["details"] == {"state": "welcome"}

    def test_audit_event_without_details(self, caplog):
        service = TelemetryService(configure_logging=False)

        with caplog.at_level(logging.INFO, logger="telemetry"):
            service.log_audit_event("session_deleted", 7, "session", "mpcc_session_b", "delete")

        assert "details" not in caplog.records[-1].extra_data

    def test_metric_is_a_debug_entry(self, caplog):
        service = TelemetryService(configure_logging=False)

        with caplog.at_level(logging.DEBUG, logger="telemetry"):
            service.record_metric("session_cache_hit", 1, {"source": "load"})

        record = caplog.records[-1]
        assert record.levelno == logging.DEBUG
        assert record.getMessage() == "Metric: session_cache_hit=1"
        assert record.extra_data == {
            "metric_name": "session_cache_hit",
            "metric_value": 1,
            "tags": {"source": "load"},
        }

    def test_service_name_from_settings(self):
        service = TelemetryService(SimpleNamespace(service_name="copilot-test"), configure_logging=False)

        assert service.service_name == "copilot-test"
        assert TelemetryService(configure_logging=False).service_name == "course-copilot"

    def test_get_logger(self):
        service = TelemetryService(configure_logging=False)

        assert service.get_logger("session.manager") is logging.getLogger("session.manager")

    def test_setup_installs_json_handler(self, root_logger):
        TelemetryService(SimpleNamespace(log_level="DEBUG", service_name="copilot-test"))

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)

    def test_initialize_sets_global(self, root_logger, monkeypatch):
        monkeypatch.setattr(telemetry_module, "_telemetry_service", None)
        assert telemetry_module.get_telemetry_service() is None

        service = telemetry_module.initialize_telemetry(SimpleNamespace(log_level="WARNING"))

        assert telemetry_module.get_telemetry_service() is service
        assert root_logger.level == logging.WARNING
