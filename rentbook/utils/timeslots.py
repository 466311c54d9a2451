import re
from datetime import date, datetime, time, timedelta
from typing import Tuple

TIME_FORMAT = "%H:%M"
_HHMM_RE = re.compile(r"[0-9]{2}:[0-9]{2}")


def parse_hhmm(value: str) -> time:
    """Parse a strict ``HH:MM`` string."""
    value = value or ""
    if not _HHMM_RE.fullmatch(value):
        raise ValueError(f"invalid time {value!r}, expected HH:MM")
    return datetime.strptime(value, TIME_FORMAT).time()


def format_hhmm(value) -> str:
    return value.strftime(TIME_FORMAT)


def combine(day: date, hhmm: str) -> datetime:
    """Attach a ``HH:MM`` time-of-day to a calendar date (naive, server local)."""
    return datetime.combine(day, parse_hhmm(hhmm))


def iso_weekday(day: date) -> int:
    """Monday=1 .. Sunday=7, the numbering used by cabinet schedules."""
    return day.isoweekday()


def weekday_from_sunday_zero(weekday: int) -> int:
    """Map a Sunday=0 based weekday onto the schedule numbering."""
    return 7 if weekday == 0 else weekday


def parse_time_label(label: str) -> Tuple[time, time]:
    """Split ``HH:MM-HH:MM`` into start and end times; end must follow start."""
    parts = (label or "").split("-")
    if len(parts) != 2:
        raise ValueError(f"invalid time label {label!r}, expected HH:MM-HH:MM")
    start, end = parse_hhmm(parts[0]), parse_hhmm(parts[1])
    if end <= start:
        raise ValueError(f"invalid time label {label!r}, end must be after start")
    return start, end


def format_time_label(start: datetime, end: datetime) -> str:
    return f"{format_hhmm(start)}-{format_hhmm(end)}"


def minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start) / timedelta(minutes=1))
