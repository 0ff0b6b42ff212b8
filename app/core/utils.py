import re
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, Union

MINUTES_PER_DAY = 24 * 60

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")

TimeLike = Union[str, time]


def parse_hhmm(value: str) -> int:
    """Parse an "HH:MM" string into minutes since midnight."""
    match = _HHMM.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time '{value}'. Use HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time '{value}'. Use HH:MM")
    return hours * 60 + minutes


def format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def to_minutes(value: TimeLike) -> int:
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    return parse_hhmm(value)


def to_time(minutes: int) -> time:
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise ValueError(f"{minutes} minutes is outside a single day")
    return time(minutes // 60, minutes % 60)


def to_hhmm(value: TimeLike) -> str:
    return format_hhmm(to_minutes(value))


def format_range(start: TimeLike, end: TimeLike) -> str:
    return f"{to_hhmm(start)}-{to_hhmm(end)}"


def combine(day: date, value: TimeLike) -> datetime:
    """Set hour and minute of ``value`` on ``day``; seconds are always zero."""
    minutes = to_minutes(value)
    return datetime(day.year, day.month, day.day, minutes // 60, minutes % 60)


def shift(value: TimeLike, minutes: int) -> str:
    """
    Shift a time of day by a signed number of minutes.

    The result must stay on the same day; crossing midnight in either
    direction raises ValueError instead of wrapping around.
    """
    shifted = to_minutes(value) + minutes
    if not 0 <= shifted < MINUTES_PER_DAY:
        raise ValueError(f"Shifting {to_hhmm(value)} by {minutes} minutes leaves the day")
    return format_hhmm(shifted)


def iter_weekday_dates(weekdays: Iterable[str], start: date, weeks: int) -> Iterator[date]:
    """
    Yield every date in ``[start, start + weeks*7)`` whose English day name
    is one of ``weekdays``. Calling it again starts over.
    """
    wanted = {day.lower() for day in weekdays}
    for offset in range(weeks * 7):
        current = start + timedelta(days=offset)
        if WEEKDAY_NAMES[current.weekday()] in wanted:
            yield current


def to_naive_local(value: datetime) -> datetime:
    """Instants are compared as naive local time; convert aware input once at the edge."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value
