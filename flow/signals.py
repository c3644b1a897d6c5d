"""
Conversation signals and navigation-style selection.

Three signals are read from a session: the user's expertise, how much of
the required course information is already known, and the user's
navigation preference. Each navigation style is scored from those signals
and the highest score wins.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from flow.states import REQUIRED_FIELDS, has_value
from session.models import ConversationSession


class ExpertiseLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"


class NavigationPreference(str, Enum):
    AUTONOMOUS = "autonomous"
    COLLABORATIVE = "collaborative"
    GUIDED = "guided"


class FlowType(str, Enum):
    """Navigation styles, in tie-break order."""
    LINEAR = "linear"
    ADAPTIVE = "adaptive"
    EXPLORATORY = "exploratory"
    GUIDED = "guided"
    EXPERT = "expert"


DEFAULT_FLOW = FlowType.ADAPTIVE

TECHNICAL_TERMS = re.compile(r"\b(api|framework|architecture|deployment)\b", re.IGNORECASE)
QUESTION_PHRASES = re.compile(r"\b(how|why|what if|can I|should I)\b", re.IGNORECASE)
LONG_MESSAGE_CHARS = 100

EXPERT_THRESHOLD = 0.7
INTERMEDIATE_THRESHOLD = 0.3

AUTONOMY_PHRASES = re.compile(r"let me|I want to|I prefer|skip|jump", re.IGNORECASE)
COLLABORATION_PHRASES = re.compile(r"\b(we|together|collaborate|work with)\b", re.IGNORECASE)
GUIDANCE_PHRASES = re.compile(r"help|guide|suggest|recommend|what should", re.IGNORECASE)


@dataclass
class FlowSignals:
    expertise: ExpertiseLevel
    expertise_score: float
    completeness: float
    preference: NavigationPreference
    preference_counts: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "expertise": self.expertise.value,
            "expertise_score": self.expertise_score,
            "completeness": self.completeness,
            "preference": self.preference.value,
            "preference_counts": dict(self.preference_counts),
        }


def analyze_expertise(session: ConversationSession) -> tuple[ExpertiseLevel, float]:
    """
    Classify the user's expertise from their own messages.

    Each user message scores one point per signal present (technical
    vocabulary, length over 100 characters, question phrasing); the total
    is divided by the number of user messages.
    """
    messages = session.user_messages()
    if not messages:
        return ExpertiseLevel.BEGINNER, 0.0

    points = 0
    for message in messages:
        text = message.content
        if TECHNICAL_TERMS.search(text):
            points += 1
        if len(text) > LONG_MESSAGE_CHARS:
            points += 1
        if QUESTION_PHRASES.search(text):
            points += 1

    score = round(points / len(messages), 4)
    if score > EXPERT_THRESHOLD:
        return ExpertiseLevel.EXPERT, score
    if score > INTERMEDIATE_THRESHOLD:
        return ExpertiseLevel.INTERMEDIATE, score
    return ExpertiseLevel.BEGINNER, score


def assess_completeness(context: dict) -> float:
    """Fraction of the required course fields present in ``context``."""
    present = sum(1 for key in REQUIRED_FIELDS if has_value(context, key))
    return round(present / len(REQUIRED_FIELDS), 4)


def infer_preference(session: ConversationSession) -> tuple[NavigationPreference, dict[str, int]]:
    """Pick the preference whose phrasing occurs most often in the transcript."""
    counts = {
        NavigationPreference.AUTONOMOUS.value: 0,
        NavigationPreference.COLLABORATIVE.value: 0,
        NavigationPreference.GUIDED.value: 0,
    }
    for message in session.messages:
        text = message.content
        counts[NavigationPreference.AUTONOMOUS.value] += len(AUTONOMY_PHRASES.findall(text))
        counts[NavigationPreference.COLLABORATIVE.value] += len(COLLABORATION_PHRASES.findall(text))
        counts[NavigationPreference.GUIDED.value] += len(GUIDANCE_PHRASES.findall(text))

    best = max(counts.values())
    if best == 0:
        return NavigationPreference.GUIDED, counts
    # dict order breaks ties: autonomy, then collaboration, then guidance
    for name, count in counts.items():
        if count == best:
            return NavigationPreference(name), counts
    return NavigationPreference.GUIDED, counts


def collect_signals(session: ConversationSession) -> FlowSignals:
    expertise, expertise_score = analyze_expertise(session)
    preference, counts = infer_preference(session)
    return FlowSignals(
        expertise=expertise,
        expertise_score=expertise_score,
        completeness=assess_completeness(session.context),
        preference=preference,
        preference_counts=counts,
    )


def score_flows(signals: FlowSignals) -> dict[FlowType, float]:
    """Score every navigation style from the collected signals."""
    beginner = signals.expertise == ExpertiseLevel.BEGINNER
    intermediate = signals.expertise == ExpertiseLevel.INTERMEDIATE
    expert = signals.expertise == ExpertiseLevel.EXPERT
    completeness = signals.completeness

    scores = {
        FlowType.LINEAR: (0.8 if beginner else 0.3) + (0.7 if completeness < 0.3 else 0.2),
        FlowType.ADAPTIVE: (0.9 if intermediate else 0.5) + 0.6 * completeness,
        FlowType.EXPLORATORY: (
            (0.8 if signals.preference == NavigationPreference.AUTONOMOUS else 0.2)
            + (0.7 if expert else 0.1)
        ),
        FlowType.GUIDED: (
            (0.9 if signals.preference == NavigationPreference.GUIDED else 0.3)
            + (0.6 if beginner else 0.2)
        ),
        FlowType.EXPERT: (0.9 if expert else 0.1) + (0.8 if completeness > 0.7 else 0.2),
    }
    return {flow: round(score, 4) for flow, score in scores.items()}


def select_flow(scores: dict[FlowType, float]) -> FlowType:
    """Highest score wins; equal scores go to the earlier style in FlowType."""
    best = None
    for flow in FlowType:
        if best is None or scores[flow] > scores[best]:
            best = flow
    return best
