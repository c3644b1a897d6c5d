"""
Branch and backtrack scoring.

All scores are weighted sums of signals in [0, 1]. The weights are module
constants so tests can pin them down.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from flow.signals import ExpertiseLevel
from flow.states import (
    BASE_STATE_MINUTES,
    STATE_PREREQUISITES,
    STATE_SKIP_CONDITIONS,
    has_value,
    sequence_index,
)
from session.models import ConversationSession, MessageRole, StateHistoryEntry, WorkflowState

# Branch confidence
PREREQUISITE_WEIGHT = 0.40
COMPLETENESS_WEIGHT = 0.25
DIRECTION_WEIGHT = 0.20
EXPERTISE_WEIGHT = 0.15

DIRECTION_NEXT = 1.0
DIRECTION_SKIP_AHEAD = 0.6
DIRECTION_BACKWARD = 0.4

EXPERTISE_FACTOR = {
    ExpertiseLevel.BEGINNER: 0.4,
    ExpertiseLevel.INTERMEDIATE: 0.7,
    ExpertiseLevel.EXPERT: 1.0,
}

# Time estimates
EXPERTISE_TIME_MULTIPLIER = {
    ExpertiseLevel.BEGINNER: 1.5,
    ExpertiseLevel.INTERMEDIATE: 1.0,
    ExpertiseLevel.EXPERT: 0.7,
}
SKIP_TIME_REDUCTION = 0.5

# Backtrack loss significance
CONTEXT_LOSS_WEIGHT = 0.40
PROGRESS_LOSS_WEIGHT = 0.30
STEPS_WEIGHT = 0.20
MESSAGES_WEIGHT = 0.10
STEPS_SATURATION = 5
MESSAGES_SATURATION = 20


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def missing_prerequisites(target: WorkflowState, context: dict) -> list[str]:
    return [key for key in STATE_PREREQUISITES[target] if not has_value(context, key)]


def satisfied_skip_conditions(target: WorkflowState, context: dict) -> list[str]:
    return [key for key in STATE_SKIP_CONDITIONS[target] if has_value(context, key)]


def can_skip(target: WorkflowState, context: dict) -> bool:
    """A state is skippable when every one of its skip conditions holds."""
    conditions = STATE_SKIP_CONDITIONS[target]
    return bool(conditions) and len(satisfied_skip_conditions(target, context)) == len(conditions)


def direction_factor(current: WorkflowState, target: WorkflowState) -> float:
    current_index = sequence_index(current)
    target_index = sequence_index(target)
    if current_index is None or target_index is None:
        return DIRECTION_BACKWARD
    if target_index == current_index + 1:
        return DIRECTION_NEXT
    if target_index > current_index:
        return DIRECTION_SKIP_AHEAD
    return DIRECTION_BACKWARD


def branch_confidence(
    current: WorkflowState,
    target: WorkflowState,
    context: dict,
    completeness: float,
    expertise: ExpertiseLevel,
) -> float:
    """
    Confidence that moving from ``current`` to ``target`` is a good step.

    0.40 prerequisite satisfaction, 0.25 information completeness,
    0.20 direction (next, skip ahead, backward), 0.15 expertise.
    """
    prerequisites = STATE_PREREQUISITES[target]
    if prerequisites:
        met = len(prerequisites) - len(missing_prerequisites(target, context))
        prerequisite_ratio = met / len(prerequisites)
    else:
        prerequisite_ratio = 1.0

    score = (
        PREREQUISITE_WEIGHT * prerequisite_ratio
        + COMPLETENESS_WEIGHT * completeness
        + DIRECTION_WEIGHT * direction_factor(current, target)
        + EXPERTISE_WEIGHT * EXPERTISE_FACTOR[expertise]
    )
    return round(_clamp(score), 4)


def estimate_minutes(target: WorkflowState, context: dict, expertise: ExpertiseLevel) -> int:
    """Estimated minutes to finish ``target``; at least 1 for any state with work."""
    base = BASE_STATE_MINUTES[target]
    if base <= 0:
        return 0
    conditions = STATE_SKIP_CONDITIONS[target]
    ratio = len(satisfied_skip_conditions(target, context)) / len(conditions) if conditions else 0.0
    minutes = base * EXPERTISE_TIME_MULTIPLIER[expertise] * (1 - SKIP_TIME_REDUCTION * ratio)
    return max(1, round(minutes))


@dataclass
class LossAssessment:
    """What a backtrack to a history entry would discard."""
    target_state: str
    significance: float
    steps_back: int
    states_lost: list[str] = field(default_factory=list)
    context_keys_lost: list[str] = field(default_factory=list)
    context_keys_changed: list[str] = field(default_factory=list)
    progress_lost: int = 0
    messages_since: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "target_state": self.target_state,
            "significance": self.significance,
            "steps_back": self.steps_back,
            "states_lost": list(self.states_lost),
            "context_keys_lost": list(self.context_keys_lost),
            "context_keys_changed": list(self.context_keys_changed),
            "progress_lost": self.progress_lost,
            "messages_since": self.messages_since,
        }


def assess_loss(
    session: ConversationSession,
    index: int,
    entry: Optional[StateHistoryEntry] = None,
) -> LossAssessment:
    """
    Assess a rewind to ``session.state_history[index]``.

    Significance is 0.40 context loss ratio, 0.30 progress drop fraction,
    0.20 steps back (saturating at 5) and 0.10 conversational messages
    since the target (saturating at 20), clamped to [0, 1].
    """
    entry = entry or session.state_history[index]
    current = session.context
    snapshot = entry.context

    lost = sorted(k for k in current if k not in snapshot)
    changed = sorted(k for k in current if k in snapshot and snapshot[k] != current[k])
    context_ratio = (len(lost) + len(changed)) / len(current) if current else 0.0

    progress_lost = max(0, session.progress - entry.progress)
    progress_ratio = progress_lost / session.progress if session.progress else 0.0

    steps_back = len(session.state_history) - index
    states_lost = [e.state.value for e in session.state_history[index + 1:]]
    states_lost.append(session.current_state.value)

    messages_since = sum(
        1 for m in session.messages[entry.message_count:]
        if m.role != MessageRole.SYSTEM
    )

    significance = (
        CONTEXT_LOSS_WEIGHT * context_ratio
        + PROGRESS_LOSS_WEIGHT * progress_ratio
        + STEPS_WEIGHT * min(1.0, steps_back / STEPS_SATURATION)
        + MESSAGES_WEIGHT * min(1.0, messages_since / MESSAGES_SATURATION)
    )

    return LossAssessment(
        target_state=entry.state.value,
        significance=round(_clamp(significance), 4),
        steps_back=steps_back,
        states_lost=states_lost,
        context_keys_lost=lost,
        context_keys_changed=changed,
        progress_lost=progress_lost,
        messages_since=messages_since,
    )
