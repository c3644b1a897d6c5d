"""
Workflow state tables for the course-creation conversation.

Every table is keyed by WorkflowState and covers every member, including
the non-workflow ERROR state, so lookups never need a fallback.
"""

from typing import Optional

from session.models import WorkflowState

S = WorkflowState

# Forward order of the workflow
SEQUENCE: tuple[WorkflowState, ...] = (
    S.WELCOME,
    S.TEMPLATE_SELECTION,
    S.REQUIREMENTS_GATHERING,
    S.STRUCTURE_GENERATION,
    S.STRUCTURE_REVIEW,
    S.CONTENT_GENERATION,
    S.CONTENT_REVIEW,
    S.FINAL_REVIEW,
    S.PUBLICATION,
    S.COMPLETED,
)

NEXT_STATE: dict[WorkflowState, Optional[WorkflowState]] = {
    S.WELCOME: S.TEMPLATE_SELECTION,
    S.TEMPLATE_SELECTION: S.REQUIREMENTS_GATHERING,
    S.REQUIREMENTS_GATHERING: S.STRUCTURE_GENERATION,
    S.STRUCTURE_GENERATION: S.STRUCTURE_REVIEW,
    S.STRUCTURE_REVIEW: S.CONTENT_GENERATION,
    S.CONTENT_GENERATION: S.CONTENT_REVIEW,
    S.CONTENT_REVIEW: S.FINAL_REVIEW,
    S.FINAL_REVIEW: S.PUBLICATION,
    S.PUBLICATION: S.COMPLETED,
    S.COMPLETED: None,
    S.ERROR: None,
}

# None keeps the session's current progress
STATE_PROGRESS: dict[WorkflowState, Optional[int]] = {
    S.WELCOME: 0,
    S.TEMPLATE_SELECTION: 10,
    S.REQUIREMENTS_GATHERING: 20,
    S.STRUCTURE_GENERATION: 35,
    S.STRUCTURE_REVIEW: 45,
    S.CONTENT_GENERATION: 60,
    S.CONTENT_REVIEW: 75,
    S.FINAL_REVIEW: 90,
    S.PUBLICATION: 95,
    S.COMPLETED: 100,
    S.ERROR: None,
}

STATE_TRANSITIONS: dict[WorkflowState, tuple[WorkflowState, ...]] = {
    S.WELCOME: (S.TEMPLATE_SELECTION, S.REQUIREMENTS_GATHERING),
    S.TEMPLATE_SELECTION: (S.REQUIREMENTS_GATHERING, S.WELCOME),
    S.REQUIREMENTS_GATHERING: (S.STRUCTURE_GENERATION, S.TEMPLATE_SELECTION),
    S.STRUCTURE_GENERATION: (S.STRUCTURE_REVIEW, S.REQUIREMENTS_GATHERING),
    S.STRUCTURE_REVIEW: (S.CONTENT_GENERATION, S.STRUCTURE_GENERATION, S.REQUIREMENTS_GATHERING),
    S.CONTENT_GENERATION: (S.CONTENT_REVIEW, S.STRUCTURE_REVIEW),
    S.CONTENT_REVIEW: (S.FINAL_REVIEW, S.CONTENT_GENERATION, S.STRUCTURE_REVIEW),
    S.FINAL_REVIEW: (S.PUBLICATION, S.CONTENT_REVIEW),
    S.PUBLICATION: (S.COMPLETED, S.FINAL_REVIEW),
    S.COMPLETED: (),
    S.ERROR: (),
}

STATE_DESCRIPTIONS: dict[WorkflowState, str] = {
    S.WELCOME: "Introduce the assistant and the course creation process",
    S.TEMPLATE_SELECTION: "Choose a course template to start from",
    S.REQUIREMENTS_GATHERING: "Collect the title, audience, objectives and difficulty",
    S.STRUCTURE_GENERATION: "Generate the section and lesson outline",
    S.STRUCTURE_REVIEW: "Review and adjust the generated outline",
    S.CONTENT_GENERATION: "Write lesson content for the approved outline",
    S.CONTENT_REVIEW: "Review and refine the generated lessons",
    S.FINAL_REVIEW: "Check the complete course before publishing",
    S.PUBLICATION: "Publish the course",
    S.COMPLETED: "The course has been created",
    S.ERROR: "The conversation hit a problem and needs recovery",
}

REQUIRED_FIELDS: tuple[str, ...] = (
    "title",
    "target_audience",
    "learning_objectives",
    "difficulty_level",
)

# Context keys that must be present before a state can be entered
STATE_PREREQUISITES: dict[WorkflowState, tuple[str, ...]] = {
    S.WELCOME: (),
    S.TEMPLATE_SELECTION: (),
    S.REQUIREMENTS_GATHERING: (),
    S.STRUCTURE_GENERATION: ("title", "learning_objectives"),
    S.STRUCTURE_REVIEW: ("course_structure",),
    S.CONTENT_GENERATION: ("course_structure",),
    S.CONTENT_REVIEW: ("generated_content",),
    S.FINAL_REVIEW: ("generated_content",),
    S.PUBLICATION: ("generated_content", "title"),
    S.COMPLETED: ("published_course_id",),
    S.ERROR: (),
}

# Context keys whose presence means the state's work is already done
STATE_SKIP_CONDITIONS: dict[WorkflowState, tuple[str, ...]] = {
    S.WELCOME: (),
    S.TEMPLATE_SELECTION: ("template",),
    S.REQUIREMENTS_GATHERING: REQUIRED_FIELDS,
    S.STRUCTURE_GENERATION: ("course_structure",),
    S.STRUCTURE_REVIEW: ("structure_approved",),
    S.CONTENT_GENERATION: ("generated_content",),
    S.CONTENT_REVIEW: (),
    S.FINAL_REVIEW: (),
    S.PUBLICATION: (),
    S.COMPLETED: (),
    S.ERROR: (),
}

BASE_STATE_MINUTES: dict[WorkflowState, int] = {
    S.WELCOME: 2,
    S.TEMPLATE_SELECTION: 5,
    S.REQUIREMENTS_GATHERING: 15,
    S.STRUCTURE_GENERATION: 10,
    S.STRUCTURE_REVIEW: 15,
    S.CONTENT_GENERATION: 30,
    S.CONTENT_REVIEW: 25,
    S.FINAL_REVIEW: 15,
    S.PUBLICATION: 5,
    S.COMPLETED: 0,
    S.ERROR: 0,
}

# Which state collects each context key
FIELD_SOURCES: dict[str, WorkflowState] = {
    "template": S.TEMPLATE_SELECTION,
    "title": S.REQUIREMENTS_GATHERING,
    "target_audience": S.REQUIREMENTS_GATHERING,
    "learning_objectives": S.REQUIREMENTS_GATHERING,
    "difficulty_level": S.REQUIREMENTS_GATHERING,
    "course_structure": S.STRUCTURE_GENERATION,
    "structure_approved": S.STRUCTURE_REVIEW,
    "generated_content": S.CONTENT_GENERATION,
    "content_approved": S.CONTENT_REVIEW,
    "published_course_id": S.PUBLICATION,
}


def sequence_index(state: WorkflowState) -> Optional[int]:
    """Position of ``state`` in the forward sequence, or None for ERROR."""
    try:
        return SEQUENCE.index(WorkflowState(state))
    except ValueError:
        return None


def has_value(context: dict, key: str) -> bool:
    """True when ``key`` is present in ``context`` with a non-empty value."""
    value = context.get(key)
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (str, list, dict, tuple, set)):
        return len(value) > 0
    return True
