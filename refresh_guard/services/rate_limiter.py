"""In-memory sliding-window limiter for the refresh endpoint."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, Optional, Tuple

from refresh_guard.core.clock import Clock, SystemClock


class SlidingWindowRateLimiter:
    """Per-key sliding windows, suitable for single-node deployments."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._hits: Dict[Tuple[str, int], Deque[datetime]] = {}

    def _window(self, key: str, window_seconds: int, now: datetime) -> Deque[datetime]:
        hits = self._hits.setdefault((key, window_seconds), deque())
        cutoff = now - timedelta(seconds=window_seconds)
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def allow(self, key: str, limits: Iterable[Tuple[int, int]]) -> bool:
        """
        Record a hit for ``key`` if every ``(limit, window_seconds)`` pair has room.

        A refused call is not counted against any window.
        """
        now = self._clock.now()
        with self._lock:
            windows = [(limit, self._window(key, seconds, now)) for limit, seconds in limits]
            if any(len(hits) >= limit for limit, hits in windows):
                return False
            for _, hits in windows:
                hits.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
