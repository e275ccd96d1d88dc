"""Millisecond timestamp source used for row versions and sync watermarks."""

import threading
import time
from typing import Callable


def wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class Clock:
    """Wall-clock milliseconds that never go backwards within a process.

    A step back of the system clock would otherwise hand out an ``updatedAt``
    lower than one already written, and the row would fall below the next
    watermark.
    """

    def __init__(self, source: Callable[[], int] | None = None):
        self._source = source or wall_clock_ms
        self._last = 0
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            value = max(int(self._source()), self._last)
            self._last = value
            return value


default_clock = Clock()


def now_ms() -> int:
    return default_clock.now()
