"""
Conversation flow-control engine.

The engine works on a loaded ConversationSession and never persists it;
callers save the session through the ConversationManager afterwards. It

- picks a navigation style from the conversation so far,
- enumerates the legal next states for that style,
- validates and executes a branch transition,
- rewinds to an earlier state behind a loss assessment and confirmation gate,
- recovers conversations that fell into the error condition.

Illegal navigation requests raise errors that carry the legal
alternatives. Advisory operations (branch listing, recovery, suggestions)
return structured results instead of raising.
"""

import copy
import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from config.settings import Settings, get_settings
from errors.exceptions import (
    InvalidBranchError,
    PrerequisitesNotMetError,
    SessionClosedError,
    TargetNotFoundError,
    invalid_request,
)
from flow.counters import CounterStore, InMemoryCounterStore
from flow.scoring import (
    LossAssessment,
    assess_loss,
    branch_confidence,
    can_skip,
    estimate_minutes,
    missing_prerequisites,
    satisfied_skip_conditions,
)
from flow.signals import (
    DEFAULT_FLOW,
    FlowType,
    collect_signals,
    score_flows,
    select_flow,
)
from flow.states import (
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
from session.models import ConversationSession, MessageRole, SessionStatus, WorkflowState

logger = logging.getLogger(__name__)


class RecoveryStrategy(str, Enum):
    BACKTRACK_RECOVERY = "backtrack_recovery"
    CONTEXT_PRESERVATION = "context_preservation"
    SMART_RESTART = "smart_restart"
    MANUAL_INTERVENTION = "manual_intervention"
    DEFAULT = "default"


CORRUPTION_MARKERS = ("corrupt", "invalid_state", "invalid state", "inconsistent")
INTERRUPTION_MARKERS = ("timeout", "timed out", "interrupt", "disconnect", "connection")

# Backtrack targets suggested by keywords in a user's reason, most specific first
REASON_KEYWORDS: tuple[tuple[tuple[str, ...], tuple[WorkflowState, ...]], ...] = (
    (("template",), (WorkflowState.TEMPLATE_SELECTION,)),
    (
        ("requirement", "audience", "objective", "title", "difficulty"),
        (WorkflowState.REQUIREMENTS_GATHERING,),
    ),
    (
        ("structure", "outline", "section", "module"),
        (WorkflowState.STRUCTURE_REVIEW, WorkflowState.STRUCTURE_GENERATION),
    ),
    (
        ("content", "lesson", "wording"),
        (WorkflowState.CONTENT_REVIEW, WorkflowState.CONTENT_GENERATION),
    ),
    (("start over", "beginning", "restart"), (WorkflowState.WELCOME,)),
)

FLOW_HINTS = {
    FlowType.LINEAR: "Follow the steps in order; each one builds on the last.",
    FlowType.ADAPTIVE: "Steps you have already covered can be skipped.",
    FlowType.EXPLORATORY: "Jump to any available step that interests you.",
    FlowType.GUIDED: "Follow the recommended option for the smoothest path.",
    FlowType.EXPERT: "All transitions are open.",
}


class Branch(BaseModel):
    """A candidate next state."""
    state: WorkflowState
    flow_type: FlowType
    description: str
    can_skip: bool = False
    skips: Optional[WorkflowState] = None
    category: Optional[str] = None
    guidance: Optional[str] = None
    confidence: float = 0.0
    estimated_minutes: int = 0
    prerequisites: list[str] = Field(default_factory=list)
    missing_prerequisites: list[str] = Field(default_factory=list)
    skip_conditions: list[str] = Field(default_factory=list)


class FlowDecision(BaseModel):
    flow: FlowType
    scores: dict[str, float]
    factors: dict[str, Any]


class BranchResult(BaseModel):
    success: bool = True
    from_state: WorkflowState
    to_state: WorkflowState
    flow_type: FlowType
    progress: int
    confidence: float
    skipped_state: Optional[WorkflowState] = None


class BacktrackResult(BaseModel):
    """
    Outcome of a backtrack request.

    When ``requires_confirmation`` is set nothing was changed; the caller
    repeats the request with ``confirmed`` once the user agrees.
    """
    success: bool
    target_state: WorkflowState
    requires_confirmation: bool = False
    confirmation_message: Optional[str] = None
    steps_back: int = 0
    progress: Optional[int] = None
    loss_assessment: dict[str, Any] = Field(default_factory=dict)
    alternatives: list[dict[str, Any]] = Field(default_factory=list)
    restored_context_keys: list[str] = Field(default_factory=list)


class RecoveryResult(BaseModel):
    success: bool
    strategy: str
    target_state: Optional[WorkflowState] = None
    message: str
    attempts: int = 0
    requires_confirmation: bool = False
    loss_assessment: dict[str, Any] = Field(default_factory=dict)
    recovery_actions: list[dict[str, Any]] = Field(default_factory=list)
    data_preservation: list[str] = Field(default_factory=list)


class ConversationFlowEngine:
    """
    Navigation engine for course-creation conversations.

    Args:
        settings: Application settings; supplies the backtrack confirmation
            threshold and the recovery attempt limit
        counters: Store for navigation counters
    """

    def __init__(self, settings: Optional[Settings] = None,
                 counters: Optional[CounterStore] = None):
        self.settings = settings or get_settings()
        self.counters = counters or InMemoryCounterStore()

    # Flow selection

    def determine_optimal_flow(self, session: ConversationSession) -> FlowDecision:
        """
        Score every navigation style for ``session`` and record the winner.

        The chosen style, the full score vector and the signals behind it
        are stored in the session metadata under ``conversation_flow``,
        ``flow_scores`` and ``flow_factors``.
        """
        signals = collect_signals(session)
        scores = score_flows(signals)
        flow = select_flow(scores)

        score_map = {f.value: s for f, s in scores.items()}
        session.set_metadata("conversation_flow", flow.value)
        session.set_metadata("flow_scores", score_map)
        session.set_metadata("flow_factors", signals.as_dict())

        logger.info(
            "Conversation flow determined",
            extra={"extra_data": {
                "session_id": session.session_id,
                "flow": flow.value,
                "scores": score_map,
            }},
        )
        return FlowDecision(flow=flow, scores=score_map, factors=signals.as_dict())

    def _resolve_flow(self, session: ConversationSession, flow: Optional[str]) -> FlowType:
        if flow is not None:
            try:
                return FlowType(flow)
            except ValueError:
                raise invalid_request(
                    f"Unknown flow type: {flow!r}",
                    details={"valid_flow_types": [f.value for f in FlowType]},
                )
        recorded = session.get_metadata("conversation_flow")
        try:
            return FlowType(recorded) if recorded else DEFAULT_FLOW
        except ValueError:
            return DEFAULT_FLOW

    # Branch enumeration

    def get_next_branches(self, session: ConversationSession,
                          flow: Optional[str] = None) -> list[Branch]:
        """
        List the states the session may move to next.

        Args:
            session: The session to navigate
            flow: Navigation style; defaults to the recorded style, then adaptive

        Returns:
            Branches annotated with confidence, time estimate, prerequisites
            and skip conditions. Empty for closed sessions and the error state.
        """
        flow_type = self._resolve_flow(session, flow)
        current = session.current_state
        if session.is_terminal or current == WorkflowState.ERROR:
            return []

        transitions = STATE_TRANSITIONS[current]
        signals = collect_signals(session)
        context = session.context

        def make(target: WorkflowState, description: Optional[str] = None, **extra) -> Branch:
            return Branch(
                state=target,
                flow_type=flow_type,
                description=description or STATE_DESCRIPTIONS[target],
                confidence=branch_confidence(
                    current, target, context, signals.completeness, signals.expertise
                ),
                estimated_minutes=estimate_minutes(target, context, signals.expertise),
                prerequisites=list(STATE_PREREQUISITES[target]),
                missing_prerequisites=missing_prerequisites(target, context),
                skip_conditions=list(STATE_SKIP_CONDITIONS[target]),
                **extra,
            )

        if flow_type == FlowType.LINEAR:
            following = NEXT_STATE[current]
            return [make(following, description="Continue to the next step")] if following else []

        if flow_type == FlowType.ADAPTIVE:
            branches = [make(t, can_skip=can_skip(t, context)) for t in transitions]
            listed = set(transitions)
            current_index = sequence_index(current)
            for target in transitions:
                if not can_skip(target, context) or sequence_index(target) <= current_index:
                    continue
                beyond = NEXT_STATE[target]
                if beyond is None or beyond in listed:
                    continue
                listed.add(beyond)
                branches.append(make(
                    beyond,
                    skips=target,
                    description=(
                        f"Skip {target.value.replace('_', ' ')}: "
                        f"{STATE_DESCRIPTIONS[beyond]}"
                    ),
                ))
            return branches

        if flow_type == FlowType.EXPLORATORY:
            return [make(t) for t in transitions]

        if flow_type == FlowType.GUIDED:
            buckets: dict[str, list[Branch]] = {"recommended": [], "alternative": [], "advanced": []}
            for target in transitions:
                category, guidance = self._guidance(current, target)
                buckets[category].append(make(target, category=category, guidance=guidance))
            return buckets["recommended"] + buckets["alternative"] + buckets["advanced"]

        return [make(t, description=t.value) for t in transitions]

    @staticmethod
    def _guidance(current: WorkflowState, target: WorkflowState) -> tuple[str, str]:
        if NEXT_STATE[current] == target:
            return "recommended", "This is the natural next step."
        if sequence_index(target) < sequence_index(current):
            return "alternative", f"Go back to revisit {target.value.replace('_', ' ')}."
        return "advanced", "Skips a step; only choose this if that work is already done."

    # Branch execution

    def handle_branching(
        self,
        session: ConversationSession,
        target: str,
        branch_data: Optional[dict[str, Any]] = None,
        flow: Optional[str] = None,
    ) -> BranchResult:
        """
        Move the session to ``target``.

        Raises:
            SessionClosedError: If the session is completed or abandoned
            InvalidBranchError: If ``target`` is not an available branch
            PrerequisitesNotMetError: If the target's prerequisites are missing
        """
        if session.is_terminal:
            raise SessionClosedError(session.session_id, session.status.value, "navigated")

        flow_type = self._resolve_flow(session, flow)
        branches = self.get_next_branches(session, flow_type.value)
        current = session.current_state
        target_name = target.value if isinstance(target, WorkflowState) else str(target)

        branch = next((b for b in branches if b.state.value == target_name), None)
        if branch is None:
            raise InvalidBranchError(
                target_name,
                current.value,
                [b.model_dump(mode="json") for b in branches],
            )

        if branch.missing_prerequisites:
            raise PrerequisitesNotMetError(
                branch.state.value,
                branch.missing_prerequisites,
                self._prerequisite_actions(branch.missing_prerequisites),
            )

        branch_data = dict(branch_data or {})
        session.transition_to(branch.state, {
            "flow_type": flow_type.value,
            "branch_data": branch_data,
            "confidence": branch.confidence,
        })
        session.raise_progress(STATE_PROGRESS[branch.state])
        session.confidence_score = branch.confidence
        session.add_message(MessageRole.SYSTEM, "Branch transition executed", {
            "event": "branch",
            "from_state": current.value,
            "to_state": branch.state.value,
            "branch_data": branch_data,
            "flow_type": flow_type.value,
        })

        self.counters.increment("branch_transitions")
        self.counters.increment(f"branch:{current.value}->{branch.state.value}")
        logger.info(
            "Branch transition executed",
            extra={"extra_data": {
                "session_id": session.session_id,
                "from_state": current.value,
                "to_state": branch.state.value,
                "flow": flow_type.value,
            }},
        )

        return BranchResult(
            from_state=current,
            to_state=branch.state,
            flow_type=flow_type,
            progress=session.progress,
            confidence=branch.confidence,
            skipped_state=branch.skips,
        )

    @staticmethod
    def _prerequisite_actions(missing: list[str]) -> list[dict[str, Any]]:
        actions = []
        for key in missing:
            source = FIELD_SOURCES.get(key)
            action = {
                "action": "collect_field",
                "field": key,
                "message": f"Provide '{key.replace('_', ' ')}' first",
            }
            if source is not None:
                action["state"] = source.value
                action["message"] = (
                    f"Provide '{key.replace('_', ' ')}' during "
                    f"{source.value.replace('_', ' ')}"
                )
            actions.append(action)
        return actions

    # Backtracking

    def handle_backtracking(
        self,
        session: ConversationSession,
        target: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> BacktrackResult:
        """
        Rewind the session to an earlier state.

        Args:
            session: The session to rewind
            target: State to return to; inferred from ``options`` when omitted
            options: ``steps`` (int), ``reason`` (free text) and ``confirmed`` (bool)

        Returns:
            A successful result, or a confirmation request when the loss is
            significant and ``confirmed`` was not given

        Raises:
            SessionClosedError: If the session is completed or abandoned
            TargetNotFoundError: If there is no history or the target is not in it
        """
        options = dict(options or {})
        if session.is_terminal:
            raise SessionClosedError(session.session_id, session.status.value, "navigated")

        history = session.state_history
        if not history:
            raise TargetNotFoundError(
                "No previous states available for backtracking",
                available_states=[],
                suggestions={"restart": "Start the conversation over"},
            )

        target_state = self._parse_state(target) if target is not None else self._infer_target(session, options)
        index = self._find_in_history(session, target_state)
        if index is None:
            raise TargetNotFoundError(
                f"Target state '{target if target is not None else target_state}' "
                "not found in conversation history",
                available_states=self._available_targets(session),
            )

        loss = assess_loss(session, index)
        threshold = self.settings.backtrack_confirmation_threshold
        if loss.significance > threshold and not options.get("confirmed"):
            logger.info(
                "Backtrack needs confirmation",
                extra={"extra_data": {
                    "session_id": session.session_id,
                    "target_state": loss.target_state,
                    "significance": loss.significance,
                    "threshold": threshold,
                }},
            )
            return BacktrackResult(
                success=False,
                target_state=history[index].state,
                requires_confirmation=True,
                confirmation_message=self._confirmation_message(loss),
                steps_back=loss.steps_back,
                loss_assessment=loss.as_dict(),
                alternatives=self._alternatives(session, index),
            )

        entry = session.rewind_to(index)
        session.add_message(MessageRole.SYSTEM, "Backtrack executed", {
            "event": "backtrack",
            "target_state": entry.state.value,
            "steps_back": loss.steps_back,
            "loss_assessment": loss.as_dict(),
        })
        self.counters.increment("backtracks")
        logger.info(
            "Backtrack executed",
            extra={"extra_data": {
                "session_id": session.session_id,
                "target_state": entry.state.value,
                "steps_back": loss.steps_back,
                "significance": loss.significance,
            }},
        )
        return BacktrackResult(
            success=True,
            target_state=entry.state,
            steps_back=loss.steps_back,
            progress=session.progress,
            loss_assessment=loss.as_dict(),
            restored_context_keys=sorted(entry.context),
        )

    def _parse_state(self, value: Any) -> Optional[WorkflowState]:
        try:
            return WorkflowState(value)
        except ValueError:
            return None

    @staticmethod
    def _find_in_history(session: ConversationSession,
                         state: Optional[WorkflowState]) -> Optional[int]:
        if state is None or state == WorkflowState.ERROR:
            return None
        for index in range(len(session.state_history) - 1, -1, -1):
            if session.state_history[index].state == state:
                return index
        return None

    @staticmethod
    def _available_targets(session: ConversationSession) -> list[str]:
        seen: list[str] = []
        for entry in reversed(session.state_history):
            if entry.stable and entry.state.value not in seen:
                seen.append(entry.state.value)
        return seen

    def _infer_target(self, session: ConversationSession,
                      options: dict[str, Any]) -> Optional[WorkflowState]:
        history = [e for e in session.state_history if e.state != WorkflowState.ERROR]
        if not history:
            return None

        steps = options.get("steps")
        if steps is not None:
            try:
                steps = max(1, int(steps))
            except (TypeError, ValueError):
                raise invalid_request(
                    f"Backtrack steps must be a positive integer, got {steps!r}",
                    details={"steps": str(steps)},
                )
            return history[max(0, len(history) - steps)].state

        reason = str(options.get("reason") or "").lower()
        if reason:
            for keywords, candidates in REASON_KEYWORDS:
                if not any(k in reason for k in keywords):
                    continue
                for candidate in candidates:
                    if self._find_in_history(session, candidate) is not None:
                        return candidate

        for entry in reversed(history):
            if entry.stable and entry.state != session.current_state:
                return entry.state
        return history[-1].state

    @staticmethod
    def _confirmation_message(loss: LossAssessment) -> str:
        parts = [
            f"Going back to {loss.target_state.replace('_', ' ')} undoes "
            f"{loss.steps_back} step(s)"
        ]
        if loss.progress_lost:
            parts.append(f"lowers progress by {loss.progress_lost}%")
        dropped = len(loss.context_keys_lost) + len(loss.context_keys_changed)
        if dropped:
            parts.append(f"reverts {dropped} collected field(s)")
        return ", ".join(parts) + ". Do you want to continue?"

    def _alternatives(self, session: ConversationSession, index: int) -> list[dict[str, Any]]:
        alternatives: list[dict[str, Any]] = []
        last = len(session.state_history) - 1
        if index < last:
            nearer = assess_loss(session, last)
            alternatives.append({
                "action": "backtrack",
                "target_state": nearer.target_state,
                "significance": nearer.significance,
                "message": f"Go back one step to {nearer.target_state.replace('_', ' ')} instead",
            })
        target = session.state_history[index].state
        fields = sorted(k for k, source in FIELD_SOURCES.items() if source == target)
        alternatives.append({
            "action": "revise_in_place",
            "fields": fields,
            "message": "Stay here and edit the relevant details directly",
        })
        alternatives.append({
            "action": "confirm",
            "options": {"confirmed": True},
            "message": "Go back anyway",
        })
        return alternatives

    # Recovery

    def handle_conversation_recovery(
        self,
        session: ConversationSession,
        options: Optional[dict[str, Any]] = None,
    ) -> RecoveryResult:
        """
        Bring a session out of an error or interrupted condition.

        The strategy comes from ``options["strategy"]`` or, failing that, from
        the recorded error context. The attempt and its outcome are appended
        to the transcript whether or not it succeeded. A backtrack recovery
        whose loss is above the confirmation threshold only asks; it runs
        once ``options["confirmed"]`` is set.
        """
        options = dict(options or {})
        if session.is_terminal:
            return RecoveryResult(
                success=False,
                strategy="none",
                message=f"Session is {session.status.value}; start a new session instead",
                recovery_actions=[{"action": "create_session"}],
            )

        error_context = session.get_metadata("error_context") or {}
        stable_index = self._last_stable_index(session)
        attempts = int(session.get_metadata("recovery_attempts", 0) or 0) + 1
        session.set_metadata("recovery_attempts", attempts)

        requested = options.get("strategy")
        if requested:
            try:
                strategy = RecoveryStrategy(requested)
            except ValueError:
                strategy = RecoveryStrategy.DEFAULT
        else:
            strategy = self._choose_strategy(session, error_context, attempts, stable_index)

        handlers = {
            RecoveryStrategy.BACKTRACK_RECOVERY: self._recover_by_backtrack,
            RecoveryStrategy.CONTEXT_PRESERVATION: self._recover_preserving_context,
            RecoveryStrategy.SMART_RESTART: self._recover_by_restart,
            RecoveryStrategy.MANUAL_INTERVENTION: self._request_manual_intervention,
            RecoveryStrategy.DEFAULT: self._recover_default,
        }
        result = handlers[strategy](session, stable_index, options)

        if result.requires_confirmation:
            # Asking the user does not use up an attempt.
            session.set_metadata("recovery_attempts", attempts - 1)
            result.attempts = attempts - 1
            logger.info(
                "Recovery backtrack needs confirmation",
                extra={"extra_data": {
                    "session_id": session.session_id,
                    "target_state": result.target_state.value if result.target_state else None,
                    "significance": result.loss_assessment.get("significance"),
                }},
            )
            return result

        result.attempts = attempts
        if result.success:
            session.set_metadata("recovery_attempts", 0)

        session.add_message(MessageRole.SYSTEM, "Recovery executed", {
            "event": "recovery",
            "strategy": strategy.value,
            "success": result.success,
            "target_state": result.target_state.value if result.target_state else None,
            "error_context": error_context,
        })
        self.counters.increment(f"recovery:{strategy.value}")

        log = logger.info if result.success else logger.warning
        log(
            "Conversation recovery executed",
            extra={"extra_data": {
                "session_id": session.session_id,
                "strategy": strategy.value,
                "success": result.success,
                "attempts": attempts,
            }},
        )
        return result

    @staticmethod
    def _last_stable_index(session: ConversationSession) -> Optional[int]:
        for index in range(len(session.state_history) - 1, -1, -1):
            if session.state_history[index].stable:
                return index
        return None

    def _choose_strategy(
        self,
        session: ConversationSession,
        error_context: dict[str, Any],
        attempts: int,
        stable_index: Optional[int],
    ) -> RecoveryStrategy:
        if attempts > self.settings.max_recovery_attempts:
            return RecoveryStrategy.MANUAL_INTERVENTION

        description = " ".join(str(v) for v in error_context.values()).lower()
        if any(marker in description for marker in CORRUPTION_MARKERS):
            if stable_index is not None:
                return RecoveryStrategy.BACKTRACK_RECOVERY
            return RecoveryStrategy.SMART_RESTART
        if any(marker in description for marker in INTERRUPTION_MARKERS):
            return RecoveryStrategy.CONTEXT_PRESERVATION
        if stable_index is None and not session.context:
            return RecoveryStrategy.SMART_RESTART
        return RecoveryStrategy.DEFAULT

    def _recover_by_backtrack(self, session: ConversationSession,
                              stable_index: Optional[int],
                              options: dict[str, Any]) -> RecoveryResult:
        if stable_index is None:
            return RecoveryResult(
                success=False,
                strategy=RecoveryStrategy.BACKTRACK_RECOVERY.value,
                message="No stable state to return to",
                recovery_actions=[{"action": "recover", "options": {"strategy": "smart_restart"}}],
            )
        loss = assess_loss(session, stable_index)
        if (loss.significance > self.settings.backtrack_confirmation_threshold
                and not options.get("confirmed")):
            return RecoveryResult(
                success=False,
                strategy=RecoveryStrategy.BACKTRACK_RECOVERY.value,
                target_state=session.state_history[stable_index].state,
                message=self._confirmation_message(loss),
                requires_confirmation=True,
                loss_assessment=loss.as_dict(),
                recovery_actions=[
                    {"action": "recover",
                     "options": {"strategy": "backtrack_recovery", "confirmed": True},
                     "message": "Go back anyway"},
                    {"action": "recover", "options": {"strategy": "context_preservation"},
                     "message": "Resume without going back"},
                ],
            )

        entry = session.rewind_to(stable_index)
        session.metadata.pop("error_context", None)
        return RecoveryResult(
            success=True,
            strategy=RecoveryStrategy.BACKTRACK_RECOVERY.value,
            target_state=entry.state,
            message=f"Returned to {entry.state.value.replace('_', ' ')}",
            loss_assessment=loss.as_dict(),
            data_preservation=sorted(entry.context),
        )

    def _recover_preserving_context(self, session: ConversationSession,
                                    stable_index: Optional[int],
                                    options: dict[str, Any]) -> RecoveryResult:
        session.set_metadata("preserved_context", copy.deepcopy(session.context))
        state = session.clear_error()
        return RecoveryResult(
            success=True,
            strategy=RecoveryStrategy.CONTEXT_PRESERVATION.value,
            target_state=state,
            message=f"Resumed at {state.value.replace('_', ' ')} with all collected details",
            data_preservation=sorted(session.context),
        )

    def _recover_by_restart(self, session: ConversationSession,
                            stable_index: Optional[int],
                            options: dict[str, Any]) -> RecoveryResult:
        target = self._restart_state(session.context)
        session.restart_at(target, STATE_PROGRESS[target] or 0)
        return RecoveryResult(
            success=True,
            strategy=RecoveryStrategy.SMART_RESTART.value,
            target_state=target,
            message=f"Restarted at {target.value.replace('_', ' ')}",
            data_preservation=sorted(session.context),
        )

    @staticmethod
    def _restart_state(context: dict[str, Any]) -> WorkflowState:
        """First workflow step whose work is not already in the context."""
        if not context:
            return WorkflowState.WELCOME
        for state in SEQUENCE[1:-1]:
            if can_skip(state, context) and not missing_prerequisites(state, context):
                continue
            if missing_prerequisites(state, context):
                return WorkflowState.REQUIREMENTS_GATHERING
            return state
        return WorkflowState.FINAL_REVIEW

    def _request_manual_intervention(self, session: ConversationSession,
                                     stable_index: Optional[int],
                                     options: dict[str, Any]) -> RecoveryResult:
        session.set_metadata("needs_manual_intervention", True)
        return RecoveryResult(
            success=False,
            strategy=RecoveryStrategy.MANUAL_INTERVENTION.value,
            message="Automatic recovery did not work; this conversation needs manual attention",
            recovery_actions=[
                {"action": "export_session", "message": "Export the session for support"},
                {"action": "recover", "options": {"strategy": "smart_restart"},
                 "message": "Restart while keeping the collected details"},
            ],
            data_preservation=sorted(session.context),
        )

    def _recover_default(self, session: ConversationSession,
                         stable_index: Optional[int],
                         options: dict[str, Any]) -> RecoveryResult:
        in_error = (
            session.current_state == WorkflowState.ERROR
            or session.status == SessionStatus.ERROR
        )
        state = session.clear_error() if in_error else session.current_state
        return RecoveryResult(
            success=True,
            strategy=RecoveryStrategy.DEFAULT.value,
            target_state=state,
            message=(
                f"Resumed at {state.value.replace('_', ' ')}" if in_error
                else "No recovery needed"
            ),
            data_preservation=sorted(session.context),
        )

    # Suggestions

    def suggest_navigation(self, session: ConversationSession) -> dict[str, Any]:
        """Summarise where the conversation stands and what could come next."""
        flow_type = self._resolve_flow(session, None)
        context = session.context
        current = session.current_state
        needs_recovery = current == WorkflowState.ERROR or session.status == SessionStatus.ERROR

        suggestions: dict[str, Any] = {}
        shortcuts: list[dict[str, Any]] = []

        if session.is_terminal:
            suggestions["closed"] = f"This session is {session.status.value}"
        else:
            missing = [k for k in REQUIRED_FIELDS if not has_value(context, k)]
            if missing:
                suggestions["missing_fields"] = [
                    {"field": k, "collected_in": FIELD_SOURCES[k].value} for k in missing
                ]
            tip = self._state_tip(current, context)
            if tip:
                suggestions["tip"] = tip
            branches = self.get_next_branches(session, flow_type.value)
            suggestions["next_steps"] = [
                {
                    "state": b.state.value,
                    "description": b.description,
                    "confidence": b.confidence,
                    "estimated_minutes": b.estimated_minutes,
                    "ready": not b.missing_prerequisites,
                }
                for b in sorted(branches, key=lambda b: b.confidence, reverse=True)
            ]
            suggestions["flow_hint"] = FLOW_HINTS[flow_type]

            current_index = sequence_index(current)
            if current_index is not None:
                for state in SEQUENCE[current_index + 1:-1]:
                    if not can_skip(state, context):
                        break
                    shortcuts.append({
                        "skip": state.value,
                        "reason": f"Already have {', '.join(satisfied_skip_conditions(state, context))}",
                    })
            if shortcuts:
                suggestions["shortcuts"] = shortcuts

            if needs_recovery:
                stable_index = self._last_stable_index(session)
                attempts = int(session.get_metadata("recovery_attempts", 0) or 0) + 1
                strategy = self._choose_strategy(
                    session, session.get_metadata("error_context") or {}, attempts, stable_index
                )
                suggestions["recovery"] = {
                    "strategy": strategy.value,
                    "message": "The conversation hit a problem; recovery is available",
                }

        current_index = sequence_index(current)
        can_skip_ahead = bool(shortcuts) or (
            not session.is_terminal
            and current_index is not None
            and any(
                (sequence_index(t) or 0) > current_index + 1
                for t in STATE_TRANSITIONS[current]
            )
        )

        return {
            "current_state": current.value,
            "progress": session.progress,
            "flow_type": flow_type.value,
            "suggestions": suggestions,
            "navigation_context": {
                "can_backtrack": bool(session.state_history) and not session.is_terminal,
                "can_skip_ahead": can_skip_ahead,
                "has_shortcuts": bool(shortcuts),
                "needs_recovery": needs_recovery and not session.is_terminal,
            },
        }

    @staticmethod
    def _state_tip(state: WorkflowState, context: dict[str, Any]) -> Optional[str]:
        if state == WorkflowState.TEMPLATE_SELECTION:
            return "Pick a template, or describe your course and skip ahead"
        if state == WorkflowState.REQUIREMENTS_GATHERING:
            return "Tell me the title, who the course is for, what learners should achieve and the level"
        if state == WorkflowState.STRUCTURE_REVIEW:
            return "Approve the outline or ask for changes to sections and lessons"
        if state == WorkflowState.CONTENT_REVIEW:
            return "Review each lesson and ask for any rewrites"
        if state == WorkflowState.ERROR:
            return "Something went wrong; run recovery to continue"
        return None

    # Error condition

    def mark_error(self, session: ConversationSession,
                   error_context: Optional[dict[str, Any]] = None) -> None:
        """Put the session into the error condition."""
        session.mark_error(error_context)
        self.counters.increment("errors")
        logger.warning(
            "Conversation marked as failed",
            extra={"extra_data": {
                "session_id": session.session_id,
                "error_context": error_context or {},
            }},
        )
