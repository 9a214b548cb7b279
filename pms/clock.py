"""
Clock
-----
Time source for ledger timestamps and monitor payloads. The ledger stamps
records in whole unix seconds; the monitor stamps push messages with
timezone-aware datetimes. Live and replay runs differ only in the clock.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Union

import pytz


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return pytz.utc.localize(dt) if dt.tzinfo is None else dt


class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Current time, always timezone-aware."""
        pass

    def unix_time(self) -> int:
        return int(self.now().timestamp())


class RealTimeClock(Clock):
    def __init__(self, timezone: str = 'UTC'):
        self.tz = pytz.timezone(timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)


class ReplayClock(Clock):
    """
    Stands still until stepped; used by tests and tick replay.
    """

    def __init__(self, start_time: datetime):
        self._current = as_utc(start_time)

    def now(self) -> datetime:
        return self._current

    def set_time(self, dt: Union[datetime, int]):
        """Jump to a datetime or a unix timestamp."""
        if isinstance(dt, int):
            dt = datetime.fromtimestamp(dt, pytz.utc)
        self._current = as_utc(dt)

    def advance(self, delta: Union[timedelta, int]):
        """Step forward by a timedelta or a number of seconds."""
        if isinstance(delta, int):
            delta = timedelta(seconds=delta)
        self._current += delta
