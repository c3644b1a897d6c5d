"""
Redis-based conversation store implementation.

Each record is stored as JSON under ``conversation:{id}``. Secondary
structures keep the lookups the manager needs to a single round trip:

- ``conversation:sid:{session_id}`` maps the external id to the storage id
- ``conversation:user:{user_id}`` sorted set of storage ids by creation time
- ``conversation:updated`` sorted set of storage ids by last update time
- ``conversation:next_id`` counter used to assign storage ids
"""

import functools
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from errors.exceptions import session_store_unavailable
from session.memory_store import OPEN_STATUSES, abandoned_copy
from session.models import ConversationRecord, SessionStatus
from session.store import ConversationStore, StoreError


KEY_PREFIX = "conversation"


def _wrap_redis_errors(operation: str):
    """Translate redis client failures into StoreError."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            if not self.client:
                raise session_store_unavailable(
                    "Redis client not connected. Call connect() first.",
                    details={"operation": operation},
                )
            try:
                return await func(self, *args, **kwargs)
            except RedisError as e:
                raise StoreError(f"Redis {operation} failed: {e}", operation=operation) from e
        return wrapper
    return decorator


class RedisConversationStore(ConversationStore):
    """
    Redis-backed conversation store.

    Attributes:
        redis_url: Redis connection URL (e.g., "redis://localhost:6379")
        client: Redis async client instance (initialized via connect())
    """

    def __init__(self, redis_url: str, client=None):
        """
        Initialize the Redis conversation store.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            client: Optional pre-built client, mainly for tests
        """
        self.redis_url = redis_url
        self.client = client

    async def connect(self) -> None:
        """
        Establish connection to Redis.

        This method must be called before using any other methods.
        """
        if self.client is None:
            self.client = redis.from_url(self.redis_url, decode_responses=True)

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self.client:
            await self.client.aclose()
            self.client = None

    @staticmethod
    def _record_key(record_id: int) -> str:
        return f"{KEY_PREFIX}:{record_id}"

    @staticmethod
    def _sid_key(session_id: str) -> str:
        return f"{KEY_PREFIX}:sid:{session_id}"

    @staticmethod
    def _user_key(user_id: int) -> str:
        return f"{KEY_PREFIX}:user:{user_id}"

    _updated_key = f"{KEY_PREFIX}:updated"
    _counter_key = f"{KEY_PREFIX}:next_id"

    async def _load_records(self, record_ids: list) -> list[ConversationRecord]:
        if not record_ids:
            return []
        raw = await self.client.mget([self._record_key(int(i)) for i in record_ids])
        return [ConversationRecord.model_validate_json(item) for item in raw if item]

    @_wrap_redis_errors("insert")
    async def insert(self, record: ConversationRecord) -> int:
        record_id = int(await self.client.incr(self._counter_key))
        claimed = await self.client.set(self._sid_key(record.session_id), record_id, nx=True)
        if not claimed:
            raise StoreError(
                f"Session id '{record.session_id}' already exists",
                operation="insert",
            )
        stored = record.model_copy(update={"id": record_id})
        pipe = self.client.pipeline(transaction=True)
        pipe.set(self._record_key(record_id), stored.model_dump_json())
        pipe.zadd(self._user_key(record.user_id), {str(record_id): record.created_at.timestamp()})
        pipe.zadd(self._updated_key, {str(record_id): record.updated_at.timestamp()})
        try:
            await pipe.execute()
        except RedisError:
            # Release the claimed session id so the insert can be retried.
            await self.client.delete(self._sid_key(record.session_id))
            raise
        return record_id

    @_wrap_redis_errors("update")
    async def update(self, record_id: int, record: ConversationRecord) -> bool:
        if not await self.client.exists(self._record_key(record_id)):
            return False
        stored = record.model_copy(update={"id": record_id})
        pipe = self.client.pipeline(transaction=True)
        pipe.set(self._record_key(record_id), stored.model_dump_json())
        pipe.zadd(self._updated_key, {str(record_id): record.updated_at.timestamp()})
        await pipe.execute()
        return True

    @_wrap_redis_errors("get")
    async def get(self, record_id: int) -> Optional[ConversationRecord]:
        data = await self.client.get(self._record_key(record_id))
        if data is None:
            return None
        return ConversationRecord.model_validate_json(data)

    @_wrap_redis_errors("resolve_id")
    async def resolve_id(self, session_id: str) -> Optional[int]:
        value = await self.client.get(self._sid_key(session_id))
        return int(value) if value is not None else None

    async def get_by_session_id(self, session_id: str) -> Optional[ConversationRecord]:
        record_id = await self.resolve_id(session_id)
        if record_id is None:
            return None
        return await self.get(record_id)

    @_wrap_redis_errors("get_many")
    async def get_many_by_session_ids(
        self, session_ids: list[str]
    ) -> dict[str, ConversationRecord]:
        if not session_ids:
            return {}
        ids = await self.client.mget([self._sid_key(s) for s in session_ids])
        records = await self._load_records([i for i in ids if i is not None])
        return {r.session_id: r for r in records}

    @_wrap_redis_errors("delete")
    async def delete(self, record_id: int) -> bool:
        data = await self.client.get(self._record_key(record_id))
        if data is None:
            return False
        record = ConversationRecord.model_validate_json(data)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(self._record_key(record_id), self._sid_key(record.session_id))
        pipe.zrem(self._user_key(record.user_id), str(record_id))
        pipe.zrem(self._updated_key, str(record_id))
        await pipe.execute()
        return True

    @_wrap_redis_errors("find_idle")
    async def find_idle(self, before: datetime) -> list[ConversationRecord]:
        ids = await self.client.zrangebyscore(self._updated_key, "-inf", f"({before.timestamp()}")
        records = await self._load_records(ids)
        return [r for r in records if r.state in OPEN_STATUSES and r.updated_at < before]

    async def _user_records(self, user_id: int) -> list[ConversationRecord]:
        ids = await self.client.zrange(self._user_key(user_id), 0, -1)
        return await self._load_records(ids)

    @_wrap_redis_errors("count_active")
    async def count_active(self, user_id: int) -> int:
        records = await self._user_records(user_id)
        return sum(1 for r in records if r.state == SessionStatus.ACTIVE)

    @_wrap_redis_errors("get_oldest_active")
    async def get_oldest_active(self, user_id: int) -> Optional[ConversationRecord]:
        # The user set is ordered by creation time, oldest first
        for record in await self._user_records(user_id):
            if record.state == SessionStatus.ACTIVE:
                return record
        return None

    @_wrap_redis_errors("list_by_user")
    async def list_by_user(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[ConversationRecord]:
        records = sorted(
            await self._user_records(user_id),
            key=lambda r: (r.updated_at, r.id or 0),
            reverse=True,
        )
        return records[offset:offset + limit]

    @_wrap_redis_errors("batch_abandon")
    async def batch_abandon(self, record_ids: list[int], at: datetime) -> int:
        records = await self._load_records(record_ids)
        pipe = self.client.pipeline(transaction=True)
        changed = 0
        for record in records:
            if record.state != SessionStatus.ACTIVE:
                continue
            pipe.set(self._record_key(record.id), abandoned_copy(record, at).model_dump_json())
            changed += 1
        if changed:
            await pipe.execute()
        return changed

    async def health_check(self) -> bool:
        """
        Check connectivity and health of the Redis store.

        Returns:
            True if Redis is healthy and accessible, False otherwise.
        """
        if not self.client:
            return False

        try:
            result = await self.client.ping()
            return result is True
        except Exception:
            return False
