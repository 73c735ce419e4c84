"""Sliding-window rate budget shared by the notification paths."""

from __future__ import annotations

from collections import deque
import threading
import time


class RollingWindowBudget:
    """Allow at most ``limit`` events in any ``window_s`` span; ``limit <= 0`` disables it."""

    def __init__(self, limit: int, window_s: float, *, name: str = "") -> None:
        self.limit = int(limit)
        self.window_s = float(window_s)
        self.name = name
        self._events: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def unlimited(self) -> bool:
        return self.limit <= 0

    def _expire(self, now: float) -> None:
        horizon = now - self.window_s
        events = self._events
        while events and events[0] <= horizon:
            events.popleft()

    def try_consume(self, now: float | None = None) -> bool:
        if self.unlimited:
            return True
        stamp = time.monotonic() if now is None else now
        with self._lock:
            self._expire(stamp)
            if len(self._events) < self.limit:
                self._events.append(stamp)
                return True
        return False

    def remaining(self, now: float | None = None) -> int | None:
        if self.unlimited:
            return None
        stamp = time.monotonic() if now is None else now
        with self._lock:
            self._expire(stamp)
            return self.limit - len(self._events)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
