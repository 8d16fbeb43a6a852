"""Weekly recurrence arithmetic.

Pure functions only: every caller passes ``now`` explicitly so results are
deterministic and safe to compute from any task or request handler.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import AbstractSet, Iterable

from .errors import InvalidRecurrence, MalformedTime
from .models import Schedule, TimeOfDay, Weekday

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")


def parse_time_of_day(text: str) -> TimeOfDay:
    """Parse a strict ``HH:MM`` 24-hour string."""
    m = _HHMM.match(text or "")
    if m is None:
        raise MalformedTime(f"Invalid time format: {text!r}, expected HH:MM")
    h, mi = int(m.group(1)), int(m.group(2))
    if h > 23 or mi > 59:
        raise MalformedTime(f"Invalid time: {text!r}")
    return TimeOfDay(h, mi)


def parse_weekdays(names: Iterable[str]) -> frozenset[Weekday]:
    return frozenset(Weekday.from_name(n) for n in names)


def next_run_time(
    weekdays: AbstractSet[Weekday],
    time_of_day: TimeOfDay,
    now: datetime,
) -> datetime:
    """Smallest datetime >= ``now`` on a selected weekday at ``time_of_day``.

    Today's slot counts when it has not passed yet (``now`` exactly on the
    slot returns the slot itself); otherwise the next selected weekday is
    used, up to the same weekday one week later.
    """
    if not weekdays:
        raise InvalidRecurrence("Cannot compute a fire time without weekdays")

    for offset in range(8):
        candidate = (now + timedelta(days=offset)).replace(
            hour=time_of_day.hour,
            minute=time_of_day.minute,
            second=0,
            microsecond=0,
        )
        if candidate.weekday() in weekdays and candidate >= now:
            return candidate

    raise InvalidRecurrence(f"No fire time found for weekdays={sorted(weekdays)}")


def _format_clock(t: TimeOfDay) -> str:
    hour12 = t.hour % 12 or 12
    suffix = "AM" if t.hour < 12 else "PM"
    return f"{hour12}:{t.minute:02d} {suffix}"


def describe_next_run(schedule: Schedule, now: datetime) -> str:
    """Human label for a schedule list, e.g. ``Tomorrow at 9:00 AM``."""
    if not schedule.active:
        return "Paused"
    if not schedule.weekdays:
        return "No days selected"

    nxt = next_run_time(schedule.weekdays, schedule.time_of_day, now)
    days = (nxt.date() - now.date()).days
    clock = _format_clock(schedule.time_of_day)
    if days == 0:
        return f"Today at {clock}"
    if days == 1:
        return f"Tomorrow at {clock}"
    return f"{Weekday(nxt.weekday()).short_name} at {clock}"
