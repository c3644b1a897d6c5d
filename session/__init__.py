"""
Conversation session management.

This module provides the session data model, the TTL session cache and the
conversation store abstraction with in-memory and Redis implementations.
The lifecycle manager lives in session.manager; it depends on the flow
state tables and is imported from there directly.
"""

from session.cache import TTLCache
from session.memory_store import InMemoryConversationStore
from session.models import (
    ConversationRecord,
    ConversationSession,
    ExportDocument,
    Message,
    MessageRole,
    SessionStatus,
    StateHistoryEntry,
    WorkflowState,
)
from session.redis_store import RedisConversationStore
from session.store import ConversationStore, StoreError

__all__ = [
    "ConversationRecord",
    "ConversationSession",
    "ConversationStore",
    "ExportDocument",
    "InMemoryConversationStore",
    "Message",
    "MessageRole",
    "RedisConversationStore",
    "SessionStatus",
    "StateHistoryEntry",
    "StoreError",
    "TTLCache",
    "WorkflowState",
]
