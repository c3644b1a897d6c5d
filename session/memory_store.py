"""
In-memory conversation store.

Used in development and tests. Records are copied on the way in and on the
way out so callers can never mutate stored state by accident.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional

from session.models import ConversationRecord, SessionStatus
from session.store import ConversationStore, StoreError

OPEN_STATUSES = (SessionStatus.ACTIVE, SessionStatus.PAUSED)


class InMemoryConversationStore(ConversationStore):
    """Dict-backed ConversationStore."""

    def __init__(self):
        self._records: dict[int, ConversationRecord] = {}
        self._by_session_id: dict[str, int] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def insert(self, record: ConversationRecord) -> int:
        async with self._lock:
            if record.session_id in self._by_session_id:
                raise StoreError(
                    f"Session id '{record.session_id}' already exists",
                    operation="insert",
                )
            record_id = self._next_id
            self._next_id += 1
            self._records[record_id] = record.model_copy(deep=True, update={"id": record_id})
            self._by_session_id[record.session_id] = record_id
            return record_id

    async def update(self, record_id: int, record: ConversationRecord) -> bool:
        async with self._lock:
            existing = self._records.get(record_id)
            if existing is None:
                return False
            if record.session_id != existing.session_id:
                self._by_session_id.pop(existing.session_id, None)
                self._by_session_id[record.session_id] = record_id
            self._records[record_id] = record.model_copy(deep=True, update={"id": record_id})
            return True

    async def get(self, record_id: int) -> Optional[ConversationRecord]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def resolve_id(self, session_id: str) -> Optional[int]:
        return self._by_session_id.get(session_id)

    async def get_by_session_id(self, session_id: str) -> Optional[ConversationRecord]:
        record_id = self._by_session_id.get(session_id)
        if record_id is None:
            return None
        return await self.get(record_id)

    async def get_many_by_session_ids(
        self, session_ids: list[str]
    ) -> dict[str, ConversationRecord]:
        found = {}
        for session_id in session_ids:
            record_id = self._by_session_id.get(session_id)
            if record_id is not None:
                found[session_id] = self._records[record_id].model_copy(deep=True)
        return found

    async def delete(self, record_id: int) -> bool:
        async with self._lock:
            record = self._records.pop(record_id, None)
            if record is None:
                return False
            self._by_session_id.pop(record.session_id, None)
            return True

    async def find_idle(self, before: datetime) -> list[ConversationRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._records.values()
            if r.state in OPEN_STATUSES and r.updated_at < before
        ]

    async def count_active(self, user_id: int) -> int:
        return sum(
            1 for r in self._records.values()
            if r.user_id == user_id and r.state == SessionStatus.ACTIVE
        )

    async def get_oldest_active(self, user_id: int) -> Optional[ConversationRecord]:
        active = [
            r for r in self._records.values()
            if r.user_id == user_id and r.state == SessionStatus.ACTIVE
        ]
        if not active:
            return None
        oldest = min(active, key=lambda r: (r.created_at, r.id))
        return oldest.model_copy(deep=True)

    async def list_by_user(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[ConversationRecord]:
        records = sorted(
            (r for r in self._records.values() if r.user_id == user_id),
            key=lambda r: (r.updated_at, r.id),
            reverse=True,
        )
        return [r.model_copy(deep=True) for r in records[offset:offset + limit]]

    async def batch_abandon(self, record_ids: list[int], at: datetime) -> int:
        changed = 0
        async with self._lock:
            for record_id in record_ids:
                record = self._records.get(record_id)
                if record is None or record.state != SessionStatus.ACTIVE:
                    continue
                self._records[record_id] = abandoned_copy(record, at)
                changed += 1
        return changed

    async def health_check(self) -> bool:
        return True


def abandoned_copy(record: ConversationRecord, at: datetime) -> ConversationRecord:
    """Return ``record`` marked abandoned by idle cleanup."""
    metadata = json.loads(record.metadata or "{}")
    metadata["abandoned_at"] = at.isoformat()
    metadata["abandon_reason"] = "idle_timeout"
    return record.model_copy(
        deep=True,
        update={"state": SessionStatus.ABANDONED, "metadata": json.dumps(metadata)},
    )
