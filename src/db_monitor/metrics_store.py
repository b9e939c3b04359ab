"""Bounded in-memory history of recorded query events."""

import threading
from collections import deque
from typing import Deque, Tuple

from .models import QueryEvent

DEFAULT_CAPACITY = 1000


class MetricsStore:
    """
    Append-only ring buffer of QueryEvents.

    The oldest event is evicted first once ``capacity`` is reached. Every
    append bumps ``version``; readers holding a cached aggregate compare
    versions to know it is stale.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._events: Deque[QueryEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._version = 0
        self._evicted = 0

    def append(self, event: QueryEvent) -> None:
        with self._lock:
            if len(self._events) == self.capacity:
                self._evicted += 1
            self._events.append(event)
            self._version += 1

    def snapshot(self) -> Tuple[QueryEvent, ...]:
        """Consistent copy of the current events, oldest first."""
        with self._lock:
            return tuple(self._events)

    def snapshot_with_version(self) -> Tuple[Tuple[QueryEvent, ...], int]:
        with self._lock:
            return tuple(self._events), self._version

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    @property
    def evicted_count(self) -> int:
        with self._lock:
            return self._evicted

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._version += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
