"""
Unit tests for the workflow state tables.
"""

import pytest

from flow.states import (
    BASE_STATE_MINUTES,
    FIELD_SOURCES,
    NEXT_STATE,
    REQUIRED_FIELDS,
    SEQUENCE,
    STATE_DESCRIPTIONS,
    STATE_PREREQUISITES,
    STATE_PROGRESS,
    STATE_SKIP_CONDITIONS,
    STATE_TRANSITIONS,
    has_value,
    sequence_index,
)
from session.models import WorkflowState

TABLES = {
    "NEXT_STATE": NEXT_STATE,
    "STATE_PROGRESS": STATE_PROGRESS,
    "STATE_TRANSITIONS": STATE_TRANSITIONS,
    "STATE_DESCRIPTIONS": STATE_DESCRIPTIONS,
    "STATE_PREREQUISITES": STATE_PREREQUISITES,
    "STATE_SKIP_CONDITIONS": STATE_SKIP_CONDITIONS,
    "BASE_STATE_MINUTES": BASE_STATE_MINUTES,
}


@pytest.mark.parametrize("name", sorted(TABLES))
def test_every_table_covers_every_state(name):
    assert set(TABLES[name]) == set(WorkflowState)


def test_sequence_excludes_error_and_ends_completed():
    assert WorkflowState.ERROR not in SEQUENCE
    assert SEQUENCE[0] == WorkflowState.WELCOME
    assert SEQUENCE[-1] == WorkflowState.COMPLETED
    assert len(SEQUENCE) == len(WorkflowState) - 1


def test_next_state_follows_sequence():
    for current, following in zip(SEQUENCE, SEQUENCE[1:]):
        assert NEXT_STATE[current] == following
    assert NEXT_STATE[WorkflowState.COMPLETED] is None
    assert NEXT_STATE[WorkflowState.ERROR] is None


def test_progress_increases_along_sequence():
    values = [STATE_PROGRESS[s] for s in SEQUENCE]

    assert values == sorted(values)
    assert values[0] == 0
    assert values[-1] == 100
    assert STATE_PROGRESS[WorkflowState.ERROR] is None


def test_transitions_are_closed_over_workflow_states():
    for state, targets in STATE_TRANSITIONS.items():
        assert state not in targets
        assert WorkflowState.ERROR not in targets
        if NEXT_STATE[state] is not None:
            assert targets[0] == NEXT_STATE[state]
    assert STATE_TRANSITIONS[WorkflowState.COMPLETED] == ()
    assert STATE_TRANSITIONS[WorkflowState.ERROR] == ()


def test_welcome_branches():
    assert STATE_TRANSITIONS[WorkflowState.WELCOME] == (
        WorkflowState.TEMPLATE_SELECTION,
        WorkflowState.REQUIREMENTS_GATHERING,
    )


def test_every_prerequisite_has_a_source_state():
    for prerequisites in STATE_PREREQUISITES.values():
        for key in prerequisites:
            assert key in FIELD_SOURCES
    for key in REQUIRED_FIELDS:
        assert FIELD_SOURCES[key] == WorkflowState.REQUIREMENTS_GATHERING


def test_sequence_index():
    assert sequence_index(WorkflowState.WELCOME) == 0
    assert sequence_index("structure_review") == 4
    assert sequence_index(WorkflowState.ERROR) is None


@pytest.mark.parametrize("value,expected", [
    (None, False),
    ("", False),
    ("Python", True),
    ([], False),
    (["loops"], True),
    ({}, False),
    (False, False),
    (True, True),
    (0, True),
])
def test_has_value(value, expected):
    assert has_value({"key": value}, "key") is expected


def test_has_value_missing_key():
    assert has_value({}, "key") is False
