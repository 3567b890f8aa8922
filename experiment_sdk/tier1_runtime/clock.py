"""
experiment_sdk.tier1_runtime.clock
───────────────────────────────────
Injectable UTC time source. Rollout windows, experiment windows, audit
timestamps and event timestamps all read the time through a Clock so tests
can pin it.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable


class Clock:
    """UTC clock. Pass now_fn to control time."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(tz=timezone.utc))

    def now(self) -> datetime:
        return self._now_fn()

    def freeze(self, dt: datetime) -> "Clock":
        """Return a clock that always reports *dt*."""
        return Clock(now_fn=lambda: dt)

    def advance(self, **delta: float) -> "Clock":
        """Return a clock shifted forward, e.g. clock.advance(days=31)."""
        shift = timedelta(**delta)
        return Clock(now_fn=lambda: self._now_fn() + shift)


_clock = Clock()


def get_clock() -> Clock:
    """Return the process-wide default clock."""
    return _clock


def set_clock(clock: Clock) -> None:
    global _clock
    _clock = clock


def utcnow() -> datetime:
    return _clock.now()


__all__ = ["Clock", "get_clock", "set_clock", "utcnow"]
