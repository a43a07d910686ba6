"""Clock abstraction shared by caches, anchors and the scheduler."""

from __future__ import annotations

import time
from typing import Protocol

DAY_MS = 86_400_000


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def time_ms(self) -> int: ...


class SystemClock:
    """Wall-clock backed :class:`Clock`."""

    def monotonic(self) -> float:
        return time.monotonic()

    def time_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Deterministic clock for tests; time only moves through :meth:`advance`."""

    def __init__(self, start_ms: int = 0, *, monotonic_start: float = 0.0) -> None:
        self._now_ms = int(start_ms)
        self._mono = float(monotonic_start)

    def monotonic(self) -> float:
        return self._mono

    def time_ms(self) -> int:
        return self._now_ms

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._mono += seconds
        self._now_ms += int(round(seconds * 1000))

    def set_time_ms(self, ts_ms: int) -> None:
        delta = int(ts_ms) - self._now_ms
        if delta < 0:
            raise ValueError("clock cannot move backwards")
        self.advance(delta / 1000.0)


def utc_day_window(ts_ms: int) -> tuple[int, int]:
    """Return ``[start, end)`` in ms of the UTC calendar day containing ``ts_ms``."""

    start = (int(ts_ms) // DAY_MS) * DAY_MS
    return start, start + DAY_MS


_SYSTEM_CLOCK = SystemClock()


def system_clock() -> SystemClock:
    return _SYSTEM_CLOCK
