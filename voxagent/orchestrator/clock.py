from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone


class Clock:
    """Wall and monotonic time source for the pipeline; swapped out in tests."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def timestamp(self) -> float:
        return time.time()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._mono = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def timestamp(self) -> float:
        return self._now.timestamp()

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds


CLOCK = Clock()


def now() -> datetime:
    return CLOCK.now()


__all__ = ["Clock", "ManualClock", "CLOCK", "now"]
