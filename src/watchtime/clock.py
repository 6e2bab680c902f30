"""Clock abstraction and local calendar-day boundary checks.

Instants are aware UTC datetimes, so ages such as the wallet's expiry window are
measured in real elapsed time. Local wall-clock time only matters for deciding
which calendar day an instant falls on.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Protocol


class Clock(Protocol):
    """Anything that can report the current instant and the household's time zone.

    ``tz`` of ``None`` means the device's local zone.
    """

    tz: Optional[tzinfo]

    def now(self) -> datetime: ...


def as_utc(moment: datetime) -> datetime:
    """Normalise ``moment`` to an aware UTC instant; naive values are read as local time."""

    return moment.astimezone(timezone.utc)


class SystemClock:
    """Default clock backed by the device clock."""

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock pinned to an explicit instant, moved forward by hand."""

    def __init__(self, start: datetime | None = None, *, tz: Optional[tzinfo] = None) -> None:
        self.tz = tz
        self._now = as_utc(start) if start else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> datetime:
        self._now = as_utc(moment)
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


def start_of_day(moment: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Return local midnight (00:00:00.000) of the day containing ``moment``."""

    midnight = datetime.combine(moment.astimezone(tz).date(), time())
    if tz is None:
        return midnight.astimezone()
    return midnight.replace(tzinfo=tz)


def has_crossed_midnight(last: Optional[datetime], now: datetime, tz: Optional[tzinfo] = None) -> bool:
    """True when ``now`` falls on a later local calendar day than ``last``.

    ``None`` means the quota has never been reset and always counts as crossed.
    Calendar days are compared rather than elapsed hours, so a device left on since
    11pm still rolls over at 00:00.
    """

    if last is None:
        return True
    return now.astimezone(tz).date() > last.astimezone(tz).date()


__all__ = ["Clock", "ManualClock", "SystemClock", "as_utc", "has_crossed_midnight", "start_of_day"]
