"""
Unit tests for the conversation session model.

Covers message accounting, workflow position changes with context
snapshots, lifecycle status changes, the content fingerprint that drives
last_updated, and conversion to and from persisted records and exports.
"""

import json
from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from errors.exceptions import SessionClosedError
from session.models import (
    EXPORT_VERSION,
    SESSION_ID_PREFIX,
    ConversationSession,
    MessageRole,
    SessionStatus,
    WorkflowState,
    generate_session_id,
    utcnow,
)


class TestIdentifiers:

    def test_generated_session_ids_are_prefixed_and_unique(self):
        first, second = generate_session_id(), generate_session_id()

        assert first.startswith(SESSION_ID_PREFIX)
        assert first != second

    def test_session_id_cannot_be_reassigned(self, session):
        with pytest.raises(ValidationError):
            session.session_id = "other"


class TestMessages:

    def test_add_message_records_current_state(self, session):
        session.current_state = WorkflowState.TEMPLATE_SELECTION

        message = session.add_message(MessageRole.USER, "I want a Python course")

        assert message.id.startswith("msg_")
        assert message.state == WorkflowState.TEMPLATE_SELECTION
        assert session.messages == [message]
        assert session.is_dirty

    def test_usage_metadata_is_added_to_totals(self, session):
        session.add_message(MessageRole.ASSISTANT, "Sure", {"tokens_used": 120, "cost": "0.0036"})
        session.add_message(MessageRole.ASSISTANT, "Next", {"tokens_used": 30, "cost": 0.001})

        assert session.total_tokens == 150
        assert session.total_cost == Decimal("0.0046")

    def test_negative_usage_is_rejected(self, session):
        with pytest.raises(ValueError):
            session.add_message(MessageRole.ASSISTANT, "oops", {"tokens_used": -1})

        assert session.messages == []

    def test_recent_messages_and_role_filter(self, session):
        for i in range(12):
            role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
            session.add_message(role, f"message {i}")

        recent = session.get_recent_messages(10)

        assert len(recent) == 10
        assert recent[0].content == "message 2"
        assert session.get_recent_messages(0) == []
        assert len(session.user_messages()) == 6
        assert len(session.get_messages_by_role("assistant")) == 6


class TestWorkflowPosition:

    def test_transition_snapshots_context(self, session):
        session.set_context("title", "Intro to Python")

        entry = session.transition_to(WorkflowState.TEMPLATE_SELECTION, {"via": "test"})
        session.set_context("title", "Changed")

        assert entry.state == WorkflowState.WELCOME
        assert entry.context == {"title": "Intro to Python"}
        assert entry.transition_data == {"via": "test"}
        assert session.current_state == WorkflowState.TEMPLATE_SELECTION
        assert session.state_history == [entry]

    def test_snapshot_is_deep(self, session):
        session.set_context("learning_objectives", ["variables"])
        entry = session.transition_to(WorkflowState.REQUIREMENTS_GATHERING)

        session.context["learning_objectives"].append("loops")

        assert entry.context["learning_objectives"] == ["variables"]

    def test_raise_progress_is_monotonic_and_clamped(self, session):
        session.raise_progress(35)
        session.raise_progress(10)
        assert session.progress == 35

        session.raise_progress(250)
        assert session.progress == 100

        session.raise_progress(None)
        assert session.progress == 100

    def test_rewind_restores_snapshot_and_keeps_transcript(self, session):
        session.set_context("template", "bootcamp")
        session.transition_to(WorkflowState.TEMPLATE_SELECTION)
        session.raise_progress(10)
        session.transition_to(WorkflowState.REQUIREMENTS_GATHERING)
        session.raise_progress(20)
        session.set_context("title", "Python")
        session.add_message(MessageRole.USER, "Audience is analysts")

        entry = session.rewind_to(1)

        assert entry.state == WorkflowState.TEMPLATE_SELECTION
        assert session.current_state == WorkflowState.TEMPLATE_SELECTION
        assert session.context == {"template": "bootcamp"}
        assert session.progress == 10
        assert len(session.state_history) == 1
        assert len(session.messages) == 1

    def test_mark_error_and_clear_error(self, session):
        session.transition_to(WorkflowState.TEMPLATE_SELECTION)

        session.mark_error({"error": "generation timed out"})

        assert session.current_state == WorkflowState.ERROR
        assert session.status == SessionStatus.ERROR
        assert session.state_history[-1].stable is False
        assert session.metadata["error_context"] == {"error": "generation timed out"}

        state = session.clear_error()

        assert state == WorkflowState.TEMPLATE_SELECTION
        assert session.status == SessionStatus.ACTIVE
        assert [e.state for e in session.state_history] == [
            WorkflowState.WELCOME, WorkflowState.TEMPLATE_SELECTION, WorkflowState.ERROR,
        ]
        assert session.state_history[-1].stable is False
        assert "error_context" not in session.metadata

    def test_mark_error_twice_only_updates_context(self, session):
        session.mark_error({"error": "first"})
        session.mark_error({"error": "second"})

        assert len(session.state_history) == 1
        assert session.metadata["error_context"] == {"error": "second"}

    def test_restart_at_keeps_context(self, session):
        session.set_context("title", "Python")
        session.mark_error({"error": "corrupt"})

        session.restart_at(WorkflowState.REQUIREMENTS_GATHERING, 20)

        assert session.current_state == WorkflowState.REQUIREMENTS_GATHERING
        assert session.progress == 20
        assert session.status == SessionStatus.ACTIVE
        assert session.context == {"title": "Python"}
        assert [e.state for e in session.state_history] == [WorkflowState.WELCOME, WorkflowState.ERROR]


class TestLifecycle:

    def test_pause_and_resume_restore_state(self, session):
        session.transition_to(WorkflowState.REQUIREMENTS_GATHERING)

        session.pause("lunch")
        assert session.status == SessionStatus.PAUSED
        assert session.paused_from_state == WorkflowState.REQUIREMENTS_GATHERING
        assert session.metadata["pause_reason"] == "lunch"

        session.resume()
        assert session.status == SessionStatus.ACTIVE
        assert session.current_state == WorkflowState.REQUIREMENTS_GATHERING
        assert session.paused_from_state is None
        assert "pause_reason" not in session.metadata
        assert [m.metadata["event"] for m in session.messages] == ["paused", "resumed"]

    def test_pause_is_idempotent_and_resume_of_active_is_noop(self, session):
        session.resume()
        assert session.messages == []

        session.pause()
        session.pause()
        assert len(session.messages) == 1

    def test_complete_records_data(self, session):
        session.complete({"course_id": 7})

        assert session.status == SessionStatus.COMPLETED
        assert session.is_terminal
        assert session.metadata["completion_data"] == {"course_id": 7}

    @pytest.mark.parametrize("operation", ["pause", "resume", "complete", "abandon", "mark_error"])
    def test_closed_sessions_reject_changes(self, session, operation):
        session.abandon("user left")

        with pytest.raises(SessionClosedError):
            getattr(session, operation)()

    @pytest.mark.parametrize("close", ["complete", "abandon"])
    def test_closed_sessions_reject_messages_and_context(self, session, close):
        getattr(session, close)()
        transcript = list(session.messages)

        with pytest.raises(SessionClosedError):
            session.add_message(MessageRole.USER, "one more thing")
        with pytest.raises(SessionClosedError):
            session.set_context("title", "Python")
        with pytest.raises(SessionClosedError):
            session.update_context({"title": "Python"})

        assert session.messages == transcript
        assert session.context == {}

    def test_closing_appends_its_own_system_message(self, session):
        session.abandon("user left")

        assert session.messages[-1].role == MessageRole.SYSTEM
        assert session.messages[-1].content == "Session abandoned: user left"

    def test_is_expired_only_for_open_sessions(self, session):
        now = utcnow()
        session.last_updated = now - timedelta(minutes=61)

        assert session.is_expired(timedelta(minutes=60), now)
        assert not session.is_expired(timedelta(minutes=90), now)

        session.complete()
        assert not session.is_expired(timedelta(minutes=60), now)


class TestFingerprint:

    def test_fingerprint_tracks_messages_title_and_step_data(self, session):
        session.mark_saved()
        assert not session.content_changed()

        session.set_metadata("flow_scores", {"linear": 1.5})
        assert not session.content_changed()

        session.add_message(MessageRole.USER, "hello")
        assert session.content_changed()

        session.mark_saved()
        session.set_context("title", "Python")
        assert session.content_changed()

        session.mark_saved()
        session.title = "Python Basics"
        assert session.content_changed()

    def test_mark_saved_clears_dirty_flag(self, session):
        session.set_context("title", "Python")
        session.mark_saved()

        assert not session.is_dirty


class TestConversion:

    def _populated(self, session):
        session.set_context("title", "Python")
        session.transition_to(WorkflowState.TEMPLATE_SELECTION)
        session.raise_progress(10)
        session.add_message(MessageRole.USER, "I want a Python course", {"tokens_used": 12})
        session.set_metadata("conversation_flow", "linear")
        session.storage_id = 3
        return session

    def test_record_round_trip(self, session):
        self._populated(session)

        record = session.to_record()
        restored = ConversationSession.from_record(record)

        assert record.id == 3
        assert record.state == SessionStatus.ACTIVE
        assert json.loads(record.step_data)["current_state"] == "template_selection"
        assert restored.session_id == session.session_id
        assert restored.storage_id == 3
        assert restored.current_state == WorkflowState.TEMPLATE_SELECTION
        assert restored.state_history == session.state_history
        assert restored.context == {"title": "Python"}
        assert restored.messages == session.messages
        assert restored.metadata == {"conversation_flow": "linear"}
        assert restored.total_tokens == 12
        assert not restored.content_changed()

    def test_export_round_trip_with_overrides(self, session):
        self._populated(session)

        document = session.to_export()
        restored = ConversationSession.from_export(document, session_id="copy", user_id=7)

        assert document.export_version == EXPORT_VERSION
        assert document.context_data == {"title": "Python"}
        assert restored.session_id == "copy"
        assert restored.user_id == 7
        assert restored.storage_id is None
        assert restored.progress == 10
        assert restored.messages == session.messages

    def test_statistics(self, session):
        self._populated(session)
        session.add_message(MessageRole.ASSISTANT, "Great choice")

        stats = session.get_statistics()

        assert stats["message_count"] == 2
        assert stats["messages_by_role"] == {"user": 1, "assistant": 1, "system": 0}
        assert stats["states_visited"] == 2
        assert stats["transitions"] == 1
        assert stats["total_tokens"] == 12
