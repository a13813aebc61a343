"""Time sources and per-day counters shared by the cache and the job queue."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Iterable, Protocol


class Clock(Protocol):
    """Wall-clock source used for TTL and scheduling comparisons."""

    def time(self) -> float: ...

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the host's wall clock."""

    def time(self) -> float:
        return time.time()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.time(), timezone.utc)


def utc_day(clock: Clock) -> str:
    """Return the current UTC date as ``YYYY-MM-DD``."""

    return clock.now().date().isoformat()


class DailyCounters:
    """Named integer counters that reset when the UTC date changes."""

    def __init__(self, clock: Clock, names: Iterable[str]) -> None:
        self._clock = clock
        self._names = tuple(names)
        self._counts: dict[str, int] = {name: 0 for name in self._names}
        self._day = utc_day(clock)

    def _reset_if_needed(self) -> None:
        today = utc_day(self._clock)
        if today != self._day:
            self._counts = {name: 0 for name in self._names}
            self._day = today

    def increment(self, name: str, amount: int = 1) -> int:
        self._reset_if_needed()
        self._counts[name] = self._counts.get(name, 0) + amount
        return self._counts[name]

    def get(self, name: str) -> int:
        self._reset_if_needed()
        return self._counts.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        self._reset_if_needed()
        return dict(self._counts)
