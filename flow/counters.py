"""
Navigation counters.

The flow engine counts branch transitions, backtracks and recovery
attempts. The store is injected so a deployment can share counters
between processes.
"""

import threading
from abc import ABC, abstractmethod


class CounterStore(ABC):
    """Named integer counters."""

    @abstractmethod
    def increment(self, name: str, amount: int = 1) -> int:
        """Add ``amount`` to ``name`` and return the new value."""
        pass

    @abstractmethod
    def get(self, name: str) -> int:
        pass

    @abstractmethod
    def snapshot(self) -> dict[str, int]:
        pass


class InMemoryCounterStore(CounterStore):

    def __init__(self):
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, amount: int = 1) -> int:
        with self._lock:
            value = self._counts.get(name, 0) + amount
            self._counts[name] = value
            return value

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)
