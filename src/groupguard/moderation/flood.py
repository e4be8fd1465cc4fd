from __future__ import annotations

import time
from collections import deque
from typing import Callable


class FloodWindowTracker:
    """Sliding-window message counter per (group, sender).

    ``hit`` never awaits, so each update is atomic on the event loop and
    unrelated keys never wait on each other. Nothing is persisted.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[tuple[str, str], deque[float]] = {}

    def hit(self, group_id: str, sender_id: str, limit: int, timeframe_seconds: float) -> bool:
        """Record one message; True when the sender exceeded ``limit``."""
        now = self._clock()
        key = (group_id, sender_id)
        window = self._windows.get(key)
        if window is None:
            window = self._windows[key] = deque()
        window.append(now)

        cutoff = now - timeframe_seconds
        while window and window[0] <= cutoff:
            window.popleft()

        return len(window) > limit

    def count(self, group_id: str, sender_id: str) -> int:
        window = self._windows.get((group_id, sender_id))
        return len(window) if window else 0

    def reset_group(self, group_id: str) -> int:
        stale = [k for k in self._windows if k[0] == group_id]
        for k in stale:
            self._windows.pop(k, None)
        return len(stale)

    def prune(self, max_age_seconds: float) -> int:
        """Drop windows whose newest entry is older than ``max_age_seconds``."""
        cutoff = self._clock() - max_age_seconds
        stale = [k for k, w in self._windows.items() if not w or w[-1] <= cutoff]
        for k in stale:
            self._windows.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)
