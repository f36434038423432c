"""Due date arithmetic for automation-created tasks.

Rule authors write offsets as "days" numbers where the fractional part is not a
fraction of a day but an hour count: ``0.1`` is one hour, ``0.23`` is 23 hours
and ``2.10`` is two days and ten hours. How many digits the author typed decides
the scale, so offsets are parsed from their text and never from a float value.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from zoneinfo import ZoneInfo

from app.core.config import get_settings

CLOCK_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

_ONE = Decimal("1")


@dataclass(frozen=True)
class DayOffset:
    days: int
    hours: int
    fractional: bool

    @property
    def total_hours(self) -> int:
        return self.days * 24 + self.hours


@dataclass(frozen=True)
class DueSlot:
    due_date: str
    due_time: str | None


def parse_day_encoding(value: Any) -> DayOffset:
    if value is None:
        return DayOffset(days=0, hours=0, fractional=False)
    if isinstance(value, bool):
        raise ValueError("day offset must be a number")
    try:
        number = Decimal(str(value).strip().replace(",", "."))
    except InvalidOperation as exc:
        raise ValueError(f"invalid day offset: {value!r}") from exc
    if not number.is_finite() or number < 0:
        raise ValueError(f"day offset must be a non-negative number: {value!r}")

    days = int(number)
    fraction = number - days
    if fraction == 0:
        return DayOffset(days=days, hours=0, fractional=False)

    digits = -fraction.as_tuple().exponent
    scale = Decimal(10) if digits == 1 else Decimal(100)
    hours = int((fraction * scale).quantize(_ONE, rounding=ROUND_HALF_UP))
    if hours > 23:
        raise ValueError(f"day offset {value!r} encodes {hours} hours; at most 23 are allowed")
    return DayOffset(days=days, hours=hours, fractional=True)


def local_now(tz_name: str | None = None) -> datetime:
    return datetime.now(ZoneInfo(tz_name or get_settings().automation_timezone))


def is_clock(value: str | None) -> bool:
    return bool(value) and CLOCK_PATTERN.match(value) is not None


def _slot_at(moment: datetime) -> DueSlot:
    return DueSlot(due_date=moment.date().isoformat(), due_time=moment.strftime("%H:%M"))


def fixed_due(
    now: datetime,
    due_in_days: Any,
    interval_days: Any = 0,
    index: int = 0,
    due_time: str | None = None,
) -> DueSlot:
    """Due slot of the ``index``-th task in a series starting ``due_in_days`` after ``now``.

    With any fractional operand the offset is counted in hours from ``now`` and
    the clock time is derived, ignoring ``due_time``. Otherwise only the calendar
    date moves and ``due_time`` is kept as configured.
    """
    base = parse_day_encoding(due_in_days)
    step = parse_day_encoding(interval_days)
    if base.fractional or step.fractional:
        return _slot_at(now + timedelta(hours=base.total_hours + index * step.total_hours))

    day = now.date() + timedelta(days=base.days + index * step.days)
    return DueSlot(due_date=day.isoformat(), due_time=due_time or None)


def shift_due(base_date: str, base_time: str | None, interval_days: Any, index: int) -> DueSlot:
    step = parse_day_encoding(interval_days)
    if index == 0 or step.total_hours == 0:
        return DueSlot(due_date=base_date, due_time=base_time)

    start_day = date.fromisoformat(base_date)
    if step.fractional:
        start_clock = time.fromisoformat(base_time) if base_time else time(0, 0)
        return _slot_at(datetime.combine(start_day, start_clock) + timedelta(hours=index * step.total_hours))

    day = start_day + timedelta(days=index * step.days)
    return DueSlot(due_date=day.isoformat(), due_time=base_time)
