"""
Shared pytest fixtures and configuration for all tests.
"""
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

# Hypothesis configuration for property-based testing
from hypothesis import settings, Verbosity, Phase

from config.settings import Settings
from flow.counters import InMemoryCounterStore
from flow.engine import ConversationFlowEngine
from session.manager import ConversationManager
from session.memory_store import InMemoryConversationStore
from session.models import ConversationSession

# Configure Hypothesis profiles for different environments
# Default profile: balanced for local development
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for async tests
    print_blob=True,  # Print failing examples for debugging
)

# CI profile: more thorough testing for continuous integration
settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,  # Reproducible results in CI
)

# Debug profile: minimal examples for quick debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],  # Skip shrinking for speed
)

# Fast profile: quick smoke tests
settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

# Load profile from environment variable HYPOTHESIS_PROFILE, default to "default"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


START_TIME = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


class FakeClock:
    """Mutable clock for the manager; advance() moves time forward."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def app_settings() -> Settings:
    """Development settings with the in-memory store and no cleanup loop."""
    return Settings(
        environment="development",
        session_store_type="memory",
        max_active_sessions_per_user=5,
        session_cache_ttl_seconds=900,
        session_idle_timeout_seconds=3600,
        cleanup_interval_seconds=0,
        backtrack_confirmation_threshold=0.7,
        max_recovery_attempts=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def telemetry() -> MagicMock:
    """Stand-in for TelemetryService that records audit events and metrics."""
    return MagicMock()


@pytest.fixture
def manager(memory_store, app_settings, clock, telemetry) -> ConversationManager:
    return ConversationManager(
        memory_store,
        settings=app_settings,
        clock=clock,
        telemetry=telemetry,
    )


@pytest.fixture
def counters() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def engine(app_settings, counters) -> ConversationFlowEngine:
    return ConversationFlowEngine(settings=app_settings, counters=counters)


@pytest.fixture
def session() -> ConversationSession:
    """A fresh session for user 42 sitting at the welcome step."""
    return ConversationSession(session_id="mpcc_session_test", user_id=42)


@pytest.fixture
def course_context() -> dict:
    """Context with every required course field collected."""
    return {
        "title": "Python for Data Analysis",
        "target_audience": "analysts moving from spreadsheets",
        "learning_objectives": ["load data", "clean data", "plot results"],
        "difficulty_level": "intermediate",
    }
