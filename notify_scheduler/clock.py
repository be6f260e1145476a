"""
MODULE OVERVIEW:
Where "now" comes from.

WHAT IS HAPPENING HERE:
Windows, caps and retries all depend on the current time, so nothing reads
the wall clock directly. The scheduler asks its `Clock` whenever a caller
does not pass an explicit `now`. `SystemClock` is used in production;
`FixedClock` only moves when told to, so tests can replay any moment.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, tzinfo


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def __init__(self, tz: tzinfo):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock(Clock):
    """A clock that only moves when told to. Used by tests and dry runs."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current
