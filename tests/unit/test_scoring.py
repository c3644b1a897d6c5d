"""
Unit tests for branch confidence, time estimates and backtrack loss.
"""

import pytest
from hypothesis import given, strategies as st

from flow.scoring import (
    assess_loss,
    branch_confidence,
    can_skip,
    direction_factor,
    estimate_minutes,
    missing_prerequisites,
    satisfied_skip_conditions,
)
from flow.signals import ExpertiseLevel
from flow.states import REQUIRED_FIELDS, SEQUENCE
from session.models import ConversationSession, MessageRole, WorkflowState

S = WorkflowState


class TestPrerequisitesAndSkips:

    def test_missing_prerequisites_in_declared_order(self):
        assert missing_prerequisites(S.STRUCTURE_GENERATION, {}) == ["title", "learning_objectives"]
        assert missing_prerequisites(S.STRUCTURE_GENERATION, {"title": "Python"}) == [
            "learning_objectives"
        ]
        assert missing_prerequisites(S.TEMPLATE_SELECTION, {}) == []

    def test_can_skip_needs_every_condition(self, course_context):
        assert can_skip(S.TEMPLATE_SELECTION, {"template": "bootcamp"})
        assert not can_skip(S.REQUIREMENTS_GATHERING, {"title": "Python"})
        assert can_skip(S.REQUIREMENTS_GATHERING, course_context)
        assert satisfied_skip_conditions(S.REQUIREMENTS_GATHERING, course_context) == list(
            REQUIRED_FIELDS
        )

    def test_states_without_conditions_are_never_skippable(self, course_context):
        assert not can_skip(S.WELCOME, course_context)
        assert not can_skip(S.CONTENT_REVIEW, {"content_approved": True})

    def test_false_flag_does_not_satisfy_a_condition(self):
        assert not can_skip(S.STRUCTURE_REVIEW, {"structure_approved": False})
        assert can_skip(S.STRUCTURE_REVIEW, {"structure_approved": True})


class TestBranchConfidence:

    @pytest.mark.parametrize("current,target,expected", [
        (S.WELCOME, S.TEMPLATE_SELECTION, 1.0),
        (S.WELCOME, S.REQUIREMENTS_GATHERING, 0.6),
        (S.TEMPLATE_SELECTION, S.WELCOME, 0.4),
        (S.ERROR, S.WELCOME, 0.4),
    ])
    def test_direction_factor(self, current, target, expected):
        assert direction_factor(current, target) == expected

    def test_next_step_for_beginner(self):
        score = branch_confidence(S.WELCOME, S.TEMPLATE_SELECTION, {}, 0.0, ExpertiseLevel.BEGINNER)

        assert score == 0.66

    def test_partial_prerequisites(self):
        score = branch_confidence(
            S.REQUIREMENTS_GATHERING,
            S.STRUCTURE_GENERATION,
            {"title": "Python"},
            0.25,
            ExpertiseLevel.INTERMEDIATE,
        )

        assert score == 0.5675

    @given(
        target=st.sampled_from(SEQUENCE),
        current=st.sampled_from(SEQUENCE),
        completeness=st.floats(min_value=0, max_value=1),
        expertise=st.sampled_from(list(ExpertiseLevel)),
    )
    def test_confidence_is_bounded(self, target, current, completeness, expertise):
        score = branch_confidence(current, target, {}, completeness, expertise)

        assert 0.0 <= score <= 1.0


class TestEstimateMinutes:

    def test_expertise_scales_base_time(self):
        assert estimate_minutes(S.REQUIREMENTS_GATHERING, {}, ExpertiseLevel.INTERMEDIATE) == 15
        assert estimate_minutes(S.WELCOME, {}, ExpertiseLevel.BEGINNER) == 3

    def test_satisfied_conditions_halve_remaining_time(self, course_context):
        assert estimate_minutes(S.REQUIREMENTS_GATHERING, course_context, ExpertiseLevel.EXPERT) == 5
        assert estimate_minutes(
            S.TEMPLATE_SELECTION, {"template": "bootcamp"}, ExpertiseLevel.EXPERT
        ) == 2

    def test_states_without_work(self):
        assert estimate_minutes(S.COMPLETED, {}, ExpertiseLevel.BEGINNER) == 0
        assert estimate_minutes(S.ERROR, {}, ExpertiseLevel.BEGINNER) == 0

    @pytest.mark.parametrize("state", SEQUENCE[:-1])
    def test_states_with_work_take_at_least_a_minute(self, state, course_context):
        context = {**course_context, "template": "t", "course_structure": {"sections": 3},
                   "structure_approved": True, "generated_content": {"lessons": 9}}

        assert estimate_minutes(state, context, ExpertiseLevel.EXPERT) >= 1


class TestAssessLoss:

    @pytest.fixture
    def travelled(self):
        session = ConversationSession(session_id="mpcc_session_loss", user_id=42)
        session.transition_to(S.TEMPLATE_SELECTION)
        session.raise_progress(10)
        session.set_context("template", "bootcamp")
        session.add_message(MessageRole.USER, "bootcamp please")
        session.transition_to(S.REQUIREMENTS_GATHERING)
        session.raise_progress(20)
        session.set_context("title", "Python")
        session.set_context("template", "custom")
        session.add_message(MessageRole.USER, "Title is Python")
        session.add_message(MessageRole.SYSTEM, "noted")
        return session

    def test_one_step_back(self, travelled):
        loss = assess_loss(travelled, 1)

        assert loss.target_state == "template_selection"
        assert loss.steps_back == 1
        assert loss.states_lost == ["requirements_gathering"]
        assert loss.context_keys_lost == ["title"]
        assert loss.context_keys_changed == ["template"]
        assert loss.progress_lost == 10
        assert loss.messages_since == 1
        assert loss.significance == 0.595

    def test_back_to_the_start(self, travelled):
        loss = assess_loss(travelled, 0)

        assert loss.steps_back == 2
        assert loss.states_lost == ["template_selection", "requirements_gathering"]
        assert loss.context_keys_lost == ["template", "title"]
        assert loss.progress_lost == 20
        assert loss.messages_since == 2
        assert loss.significance == 0.79

    def test_nothing_to_lose(self):
        session = ConversationSession(session_id="mpcc_session_loss", user_id=42)
        session.transition_to(S.TEMPLATE_SELECTION)

        loss = assess_loss(session, 0)

        assert loss.significance == 0.04
        assert loss.as_dict()["states_lost"] == ["template_selection"]
