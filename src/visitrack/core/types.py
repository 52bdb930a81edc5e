from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


@dataclass
class SimClock:
    """
    Wall time derived from a SimPy environment: start_dt + env.now seconds.
    """

    env: Any
    start_dt: datetime

    def now(self) -> datetime:
        return self.start_dt + timedelta(seconds=float(self.env.now))


@dataclass
class ManualClock:
    """
    Clock that only moves when told to. Used by tests and replay tooling.
    """

    current: datetime
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.current = ensure_utc(self.current)

    def now(self) -> datetime:
        with self._lock:
            return self.current

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self.current = self.current + timedelta(**delta)
            return self.current

    def set(self, dt: datetime) -> None:
        with self._lock:
            self.current = ensure_utc(dt)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
