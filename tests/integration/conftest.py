"""
Integration test configuration and fixtures.

The API is exercised end to end through FastAPI's TestClient against the
in-memory session store; the lifespan runs, so the store is connected and
disconnected exactly as in production.
"""
import pytest
from fastapi.testclient import TestClient

from main import create_app
from session.memory_store import InMemoryConversationStore
from telemetry.service import TelemetryService


@pytest.fixture
def api_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def client(app_settings, api_store):
    """TestClient for an app wired to a fresh in-memory store."""
    app = create_app(
        settings=app_settings,
        store=api_store,
        telemetry=TelemetryService(app_settings, configure_logging=False),
    )
    with TestClient(app) as test_client:
        yield test_client
