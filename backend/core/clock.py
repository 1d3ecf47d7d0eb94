"""Injectable clock. All stored timestamps are naive UTC."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone


@dataclass(frozen=True)
class Instant:
    """Wall time paired with a monotonic reading."""

    wall: datetime
    monotonic: float


class Clock:
    """System clock."""

    def now(self) -> Instant:
        return Instant(
            wall=datetime.now(timezone.utc).replace(tzinfo=None),
            monotonic=time.monotonic(),
        )

    def utcnow(self) -> datetime:
        return self.now().wall

    def today(self) -> date:
        return self.utcnow().date()


class FrozenClock(Clock):
    """Manually advanced clock for tests and replays."""

    def __init__(self, start: datetime):
        self._wall = start.replace(tzinfo=None) if start.tzinfo else start
        self._monotonic = 0.0

    def now(self) -> Instant:
        return Instant(wall=self._wall, monotonic=self._monotonic)

    def advance(self, **kwargs: float) -> datetime:
        delta = timedelta(**kwargs)
        self._wall += delta
        self._monotonic += delta.total_seconds()
        return self._wall

    def set(self, wall: datetime) -> None:
        if wall < self._wall:
            raise ValueError("FrozenClock cannot move backwards")
        self._monotonic += (wall - self._wall).total_seconds()
        self._wall = wall
