"""
Hybrid logical clock for write timestamps.

Timestamps are wall-clock milliseconds, bumped forward whenever the wall
clock would not move past the last issued or observed value. Every writer
therefore issues strictly increasing timestamps, and a local write made
after seeing a remote one always outranks it.
"""

from __future__ import annotations

import math
import threading
import time
from typing import Callable, Optional


def wall_ms() -> float:
    return float(int(time.time() * 1000))


class HybridClock:
    """Monotonic per-writer timestamp source.

    Thread safety:
        tick() and observe() are guarded by a lock.

    Example:
        >>> clock = HybridClock()
        >>> a = clock.tick()
        >>> b = clock.tick()
        >>> b > a
        True
    """

    def __init__(self, now: Optional[Callable[[], float]] = None) -> None:
        self._now = now or wall_ms
        self._last = 0.0
        self._lock = threading.Lock()

    def tick(self) -> float:
        """Issue a timestamp greater than any previously issued or observed."""
        with self._lock:
            self._last = max(self._now(), self._last + 1)
            return self._last

    def observe(self, ts: float) -> None:
        """Advance past a timestamp seen from another peer.

        Non-finite timestamps are ignored.
        """
        if not math.isfinite(ts):
            return
        with self._lock:
            if ts > self._last:
                self._last = ts

    @property
    def last(self) -> float:
        return self._last
