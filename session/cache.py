"""
In-process TTL cache.

Entries carry an absolute expiry. An expired entry is treated exactly like
a miss and evicted lazily on access; purge_expired() reclaims memory for
entries that are never read again.
"""

import threading
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")

DEFAULT_CACHE_TTL_SECONDS = 900


class TTLCache(Generic[K, V]):
    """
    Thread-safe mapping from key to value with per-entry expiry.

    Attributes:
        ttl_seconds: Lifetime applied to entries set without an explicit TTL
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            ttl_seconds: Default entry lifetime in seconds
            clock: Returns the current time in seconds; defaults to time.time
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time
        self._entries: Dict[K, Tuple[V, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: K, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
