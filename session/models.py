"""
Conversation session data model.

A ConversationSession is the live, in-process view of one conversation:
its transcript, its position in the course-creation workflow, the context
collected so far and its token/cost accounting. The persisted shape is the
flat ConversationRecord, whose JSON columns are produced by to_record() and
read back by from_record(). ExportDocument is the portable, versioned form
used for export and import.
"""

import copy
import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, PrivateAttr

from errors.exceptions import SessionClosedError


DEFAULT_TITLE = "New Course (Draft)"
DEFAULT_CONTEXT_TYPE = "course_creation"
EXPORT_VERSION = "1.0"
SESSION_ID_PREFIX = "mpcc_session_"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """Generate a new external session identifier."""
    return f"{SESSION_ID_PREFIX}{uuid.uuid4().hex}"


class WorkflowState(str, Enum):
    """Named steps of the course-creation workflow."""
    WELCOME = "welcome"
    TEMPLATE_SELECTION = "template_selection"
    REQUIREMENTS_GATHERING = "requirements_gathering"
    STRUCTURE_GENERATION = "structure_generation"
    STRUCTURE_REVIEW = "structure_review"
    CONTENT_GENERATION = "content_generation"
    CONTENT_REVIEW = "content_review"
    FINAL_REVIEW = "final_review"
    PUBLICATION = "publication"
    COMPLETED = "completed"
    ERROR = "error"


class SessionStatus(str, Enum):
    """Coarse lifecycle status, independent of the workflow state."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.ABANDONED})


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """A single transcript entry."""
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex}")
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)
    state: Optional[WorkflowState] = None


class StateHistoryEntry(BaseModel):
    """
    Snapshot written when a session leaves a workflow state.

    The context is a deep copy taken at the moment of the transition so a
    later rewind can restore exactly what the user had.
    """
    state: WorkflowState
    timestamp: datetime = Field(default_factory=utcnow)
    context: dict[str, Any] = Field(default_factory=dict)
    progress: int = 0
    message_count: int = 0
    transition_data: dict[str, Any] = Field(default_factory=dict)
    stable: bool = True


class ConversationRecord(BaseModel):
    """
    Persisted row for a conversation session.

    messages, metadata and step_data hold JSON text; step_data carries the
    workflow position (current_state, state_history, context, progress,
    confidence_score, paused_from_state).
    """
    id: Optional[int] = None
    session_id: str
    user_id: int
    state: SessionStatus = SessionStatus.ACTIVE
    context: str = DEFAULT_CONTEXT_TYPE
    title: str = DEFAULT_TITLE
    messages: str = "[]"
    metadata: str = "{}"
    step_data: str = "{}"
    total_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ExportDocument(BaseModel):
    """Flat, versioned export of a session. Validated on import."""
    export_version: str = EXPORT_VERSION
    exported_at: datetime = Field(default_factory=utcnow)
    session_id: str
    user_id: int
    context: str = DEFAULT_CONTEXT_TYPE
    title: str = DEFAULT_TITLE
    status: SessionStatus = SessionStatus.ACTIVE
    current_state: WorkflowState = WorkflowState.WELCOME
    state_history: list[StateHistoryEntry] = Field(default_factory=list)
    context_data: dict[str, Any] = Field(default_factory=dict)
    progress: int = Field(default=0, ge=0, le=100)
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    paused_from_state: Optional[WorkflowState] = None
    messages: list[Message] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_updated: datetime
    total_tokens: int = Field(default=0, ge=0)
    total_cost: Decimal = Field(default=Decimal("0"), ge=0)


class ConversationSession(BaseModel):
    """
    Live conversation session.

    Mutating helpers set the dirty flag; last_updated is owned by the
    manager, which bumps it on save only when content_fingerprint() moved.
    """

    session_id: str = Field(frozen=True)
    storage_id: Optional[int] = None
    user_id: int
    context_type: str = DEFAULT_CONTEXT_TYPE
    title: str = DEFAULT_TITLE
    status: SessionStatus = SessionStatus.ACTIVE
    current_state: WorkflowState = WorkflowState.WELCOME
    state_history: list[StateHistoryEntry] = Field(default_factory=list)
    progress: int = Field(default=0, ge=0, le=100)
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    paused_from_state: Optional[WorkflowState] = None
    messages: list[Message] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    total_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    _dirty: bool = PrivateAttr(default=False)
    _saved_fingerprint: Optional[str] = PrivateAttr(default=None)

    # Messages

    def add_message(
        self,
        role: MessageRole,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Message:
        """
        Append a message to the transcript.

        ``tokens_used`` and ``cost`` metadata keys are added to the session
        accounting.

        Raises:
            SessionClosedError: If the session is completed or abandoned
            ValueError: If the usage metadata is negative.
        """
        self._ensure_open("given new messages")
        return self._append_message(role, content, metadata)

    def _append_message(
        self,
        role: MessageRole,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Message:
        metadata = dict(metadata or {})
        tokens = int(metadata.get("tokens_used", 0) or 0)
        cost = metadata.get("cost", 0) or 0
        self.add_usage(tokens, cost)

        message = Message(
            role=MessageRole(role),
            content=content,
            metadata=metadata,
            state=self.current_state,
        )
        self.messages.append(message)
        self._dirty = True
        return message

    def get_recent_messages(self, limit: int = 10) -> list[Message]:
        if limit <= 0:
            return []
        return list(self.messages[-limit:])

    def get_messages_by_role(self, role: MessageRole) -> list[Message]:
        role = MessageRole(role)
        return [m for m in self.messages if m.role == role]

    def user_messages(self) -> list[Message]:
        return self.get_messages_by_role(MessageRole.USER)

    # Context and metadata

    def set_context(self, key: str, value: Any) -> None:
        self._ensure_open("edited")
        self.context[key] = value
        self._dirty = True

    def update_context(self, values: dict[str, Any]) -> None:
        self._ensure_open("edited")
        self.context.update(values)
        self._dirty = True

    def get_context(self, key: str, default: Any = None) -> Any:
        return self.context.get(key, default)

    def set_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value
        self._dirty = True

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    # Workflow position

    def transition_to(
        self,
        state: WorkflowState,
        data: Optional[dict[str, Any]] = None,
        stable: bool = True,
    ) -> StateHistoryEntry:
        """
        Leave the current state for ``state``.

        A history entry for the state being left is appended first, holding
        a deep snapshot of the context and the progress at that moment.
        """
        entry = StateHistoryEntry(
            state=self.current_state,
            context=copy.deepcopy(self.context),
            progress=self.progress,
            message_count=len(self.messages),
            transition_data=dict(data or {}),
            stable=stable,
        )
        self.state_history.append(entry)
        self.current_state = WorkflowState(state)
        self._dirty = True
        return entry

    def raise_progress(self, value: Optional[int]) -> None:
        """Move progress up to ``value``; progress never decreases here."""
        if value is None:
            return
        value = max(0, min(100, int(value)))
        if value > self.progress:
            self.progress = value
            self._dirty = True

    def rewind_to(self, index: int) -> StateHistoryEntry:
        """
        Return to the state recorded at ``state_history[index]``.

        History from that entry on is dropped and the entry's context
        snapshot and progress are restored. The transcript is left intact.
        """
        entry = self.state_history[index]
        self.state_history = self.state_history[:index]
        self.current_state = entry.state
        self.context = copy.deepcopy(entry.context)
        self.progress = entry.progress
        if self.status == SessionStatus.ERROR:
            self.status = SessionStatus.ACTIVE
        self._dirty = True
        return entry

    def mark_error(self, error_context: Optional[dict[str, Any]] = None) -> None:
        """Drop the conversation into the error condition."""
        self._ensure_open("marked as failed")
        if self.current_state == WorkflowState.ERROR:
            self.metadata["error_context"] = dict(error_context or {})
            self._dirty = True
            return
        self.transition_to(
            WorkflowState.ERROR,
            {"error_context": dict(error_context or {})},
            stable=False,
        )
        self.status = SessionStatus.ERROR
        self.metadata["error_context"] = dict(error_context or {})

    def clear_error(self) -> WorkflowState:
        """
        Leave the error condition and return to the state it interrupted.

        The move out of ``error`` is appended to the history as an unstable
        entry; the current context is kept as it is.
        """
        if self.current_state == WorkflowState.ERROR:
            self.transition_to(self._interrupted_state(), {"event": "error_cleared"}, stable=False)
        self._leave_error_status()
        return self.current_state

    def restart_at(self, state: WorkflowState, progress: int) -> None:
        """Restart the workflow at ``state``, keeping the gathered context."""
        self.transition_to(
            state,
            {"event": "restart"},
            stable=self.current_state != WorkflowState.ERROR,
        )
        self.progress = max(0, min(100, int(progress)))
        self._leave_error_status()

    def _interrupted_state(self) -> WorkflowState:
        for entry in reversed(self.state_history):
            if entry.state != WorkflowState.ERROR:
                return entry.state
        return WorkflowState.WELCOME

    def _leave_error_status(self) -> None:
        if self.status == SessionStatus.ERROR:
            self.status = SessionStatus.ACTIVE
        self.metadata.pop("error_context", None)
        self._dirty = True

    # Lifecycle status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def _ensure_open(self, operation: str) -> None:
        if self.is_terminal:
            raise SessionClosedError(self.session_id, self.status.value, operation)

    def pause(self, reason: Optional[str] = None) -> None:
        self._ensure_open("paused")
        if self.status == SessionStatus.PAUSED:
            return
        self.paused_from_state = self.current_state
        self.status = SessionStatus.PAUSED
        self.metadata["paused_at"] = utcnow().isoformat()
        if reason:
            self.metadata["pause_reason"] = reason
        self.add_message(
            MessageRole.SYSTEM,
            f"Session paused{': ' + reason if reason else ''}",
            {"event": "paused"},
        )

    def resume(self) -> None:
        self._ensure_open("resumed")
        if self.status != SessionStatus.PAUSED:
            return
        if self.paused_from_state is not None:
            self.current_state = self.paused_from_state
        self.paused_from_state = None
        self.status = SessionStatus.ACTIVE
        self.metadata.pop("pause_reason", None)
        self.metadata["resumed_at"] = utcnow().isoformat()
        self.add_message(
            MessageRole.SYSTEM,
            f"Session resumed at {self.current_state.value}",
            {"event": "resumed"},
        )

    def complete(self, data: Optional[dict[str, Any]] = None) -> None:
        self._ensure_open("completed")
        self.status = SessionStatus.COMPLETED
        self.paused_from_state = None
        self.metadata["completed_at"] = utcnow().isoformat()
        if data:
            self.metadata["completion_data"] = dict(data)
        self._append_message(MessageRole.SYSTEM, "Session completed", {"event": "completed"})

    def abandon(self, reason: Optional[str] = None) -> None:
        self._ensure_open("abandoned")
        self.status = SessionStatus.ABANDONED
        self.metadata["abandoned_at"] = utcnow().isoformat()
        if reason:
            self.metadata["abandon_reason"] = reason
        self._append_message(
            MessageRole.SYSTEM,
            f"Session abandoned{': ' + reason if reason else ''}",
            {"event": "abandoned"},
        )

    def is_expired(self, idle: timedelta, now: Optional[datetime] = None) -> bool:
        """True when an open session has been idle for longer than ``idle``."""
        if self.status not in (SessionStatus.ACTIVE, SessionStatus.PAUSED):
            return False
        now = now or utcnow()
        return self.last_updated < now - idle

    # Accounting

    def add_usage(self, tokens: int = 0, cost: Any = 0) -> None:
        tokens = int(tokens)
        cost = Decimal(str(cost))
        if tokens < 0 or cost < 0:
            raise ValueError("Token and cost usage must not be negative")
        if tokens or cost:
            self.total_tokens += tokens
            self.total_cost += cost
            self._dirty = True

    # Persistence helpers

    def step_data(self) -> dict[str, Any]:
        return {
            "current_state": self.current_state.value,
            "state_history": [e.model_dump(mode="json") for e in self.state_history],
            "context": self.context,
            "progress": self.progress,
            "confidence_score": self.confidence_score,
            "paused_from_state": (
                self.paused_from_state.value if self.paused_from_state else None
            ),
        }

    def content_fingerprint(self) -> str:
        """Hash of the fields whose change counts as user-visible activity."""
        payload = {
            "messages": [m.model_dump(mode="json") for m in self.messages],
            "title": self.title,
            "step_data": self.step_data(),
        }
        encoded = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def content_changed(self) -> bool:
        return self._saved_fingerprint != self.content_fingerprint()

    def mark_saved(self) -> None:
        self._dirty = False
        self._saved_fingerprint = self.content_fingerprint()

    def get_statistics(self) -> dict[str, Any]:
        by_role = {role.value: 0 for role in MessageRole}
        for message in self.messages:
            by_role[message.role.value] += 1
        visited = [e.state.value for e in self.state_history] + [self.current_state.value]
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "current_state": self.current_state.value,
            "progress": self.progress,
            "message_count": len(self.messages),
            "messages_by_role": by_role,
            "states_visited": len(set(visited)),
            "transitions": len(self.state_history),
            "total_tokens": self.total_tokens,
            "total_cost": str(self.total_cost),
            "duration_seconds": (self.last_updated - self.created_at).total_seconds(),
        }

    def to_record(self) -> ConversationRecord:
        return ConversationRecord(
            id=self.storage_id,
            session_id=self.session_id,
            user_id=self.user_id,
            state=self.status,
            context=self.context_type,
            title=self.title,
            messages=json.dumps([m.model_dump(mode="json") for m in self.messages]),
            metadata=json.dumps(self.metadata, default=str),
            step_data=json.dumps(self.step_data(), default=str),
            total_tokens=self.total_tokens,
            total_cost=self.total_cost,
            created_at=self.created_at,
            updated_at=self.last_updated,
        )

    @classmethod
    def from_record(cls, record: ConversationRecord) -> "ConversationSession":
        step = json.loads(record.step_data or "{}")
        session = cls(
            session_id=record.session_id,
            storage_id=record.id,
            user_id=record.user_id,
            context_type=record.context,
            title=record.title,
            status=record.state,
            current_state=step.get("current_state", WorkflowState.WELCOME),
            state_history=step.get("state_history", []),
            progress=step.get("progress", 0),
            confidence_score=step.get("confidence_score", 0.0),
            paused_from_state=step.get("paused_from_state"),
            messages=json.loads(record.messages or "[]"),
            context=step.get("context", {}),
            metadata=json.loads(record.metadata or "{}"),
            total_tokens=record.total_tokens,
            total_cost=record.total_cost,
            created_at=record.created_at,
            last_updated=record.updated_at,
        )
        session.mark_saved()
        return session

    def to_export(self) -> ExportDocument:
        return ExportDocument(
            session_id=self.session_id,
            user_id=self.user_id,
            context=self.context_type,
            title=self.title,
            status=self.status,
            current_state=self.current_state,
            state_history=copy.deepcopy(self.state_history),
            context_data=copy.deepcopy(self.context),
            progress=self.progress,
            confidence_score=self.confidence_score,
            paused_from_state=self.paused_from_state,
            messages=copy.deepcopy(self.messages),
            metadata=copy.deepcopy(self.metadata),
            created_at=self.created_at,
            last_updated=self.last_updated,
            total_tokens=self.total_tokens,
            total_cost=self.total_cost,
        )

    @classmethod
    def from_export(
        cls,
        document: ExportDocument,
        session_id: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> "ConversationSession":
        return cls(
            session_id=session_id or document.session_id,
            user_id=user_id if user_id is not None else document.user_id,
            context_type=document.context,
            title=document.title,
            status=document.status,
            current_state=document.current_state,
            state_history=document.state_history,
            progress=document.progress,
            confidence_score=document.confidence_score,
            paused_from_state=document.paused_from_state,
            messages=document.messages,
            context=document.context_data,
            metadata=document.metadata,
            total_tokens=document.total_tokens,
            total_cost=document.total_cost,
            created_at=document.created_at,
            last_updated=document.last_updated,
        )
