"""
Conversation store abstraction.

This module defines the persistence contract the session manager relies
on. Records are flat ConversationRecord rows keyed by an integer storage
id, with a secondary unique index on the external session id.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from session.models import ConversationRecord


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message)


class ConversationStore(ABC):
    """
    Abstract base class for conversation record storage.

    All methods are async to support non-blocking I/O with external
    storage systems. Implementations raise StoreError for backend
    failures; a missing record is reported through the return value.
    """

    async def connect(self) -> None:
        """Open backend connections. Called once at application startup."""
        return None

    async def disconnect(self) -> None:
        """Release backend connections. Called at application shutdown."""
        return None

    @abstractmethod
    async def insert(self, record: ConversationRecord) -> int:
        """
        Insert a new record.

        Args:
            record: The record to insert. Its ``id`` is ignored.

        Returns:
            The storage id assigned to the record.

        Raises:
            StoreError: If the session id is already taken or the write fails.
        """
        pass

    @abstractmethod
    async def update(self, record_id: int, record: ConversationRecord) -> bool:
        """
        Replace the record stored under ``record_id``.

        Returns:
            True if the record existed and was updated, False otherwise.
        """
        pass

    @abstractmethod
    async def get(self, record_id: int) -> Optional[ConversationRecord]:
        pass

    @abstractmethod
    async def resolve_id(self, session_id: str) -> Optional[int]:
        """Map an external session id to its storage id."""
        pass

    @abstractmethod
    async def get_by_session_id(self, session_id: str) -> Optional[ConversationRecord]:
        pass

    @abstractmethod
    async def get_many_by_session_ids(
        self, session_ids: list[str]
    ) -> dict[str, ConversationRecord]:
        """
        Fetch several records in a single round trip.

        Returns:
            Mapping of session id to record; ids with no record are omitted.
        """
        pass

    @abstractmethod
    async def delete(self, record_id: int) -> bool:
        pass

    @abstractmethod
    async def find_idle(self, before: datetime) -> list[ConversationRecord]:
        """
        Find open records that have not been updated since ``before``.

        Only records whose status is active or paused are returned.
        """
        pass

    @abstractmethod
    async def count_active(self, user_id: int) -> int:
        pass

    @abstractmethod
    async def get_oldest_active(self, user_id: int) -> Optional[ConversationRecord]:
        """Return the user's active record with the earliest creation time."""
        pass

    @abstractmethod
    async def list_by_user(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[ConversationRecord]:
        """List a user's records, most recently updated first."""
        pass

    @abstractmethod
    async def batch_abandon(self, record_ids: list[int], at: datetime) -> int:
        """
        Mark the given records abandoned in one write.

        Only records that are still active are changed; ``updated_at`` is
        left untouched.

        Returns:
            Number of records changed.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check connectivity and health of the store.

        Note:
            This method should not raise exceptions - connectivity issues
            should be caught and result in a False return value.
        """
        pass
