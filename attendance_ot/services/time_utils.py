"""Single home for time parsing and formatting.

Department timings are stored as the strings admins typed ("9:00 AM",
"09:30PM", "18:00"). Every caller that needs a wall-clock boundary goes
through :func:`parse_time_of_day` and :func:`local_datetime_on`.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from attendance_ot.settings import get_settings

DEFAULT_TIMEZONE = "Asia/Kolkata"

_TIME_12H_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")
_TIME_24H_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")


class TimeParseError(ValueError):
    pass


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ts(ts: datetime | None) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if ts is None:
        return utcnow()
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_time_of_day(value: str) -> time:
    """Parse "9:00 AM", "09:30PM", "12:15 am", "18:00" or "18:00:00"."""
    if not isinstance(value, str) or not value.strip():
        raise TimeParseError("Time value is empty.")

    match = _TIME_12H_RE.match(value)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2))
        meridiem = match.group(3).upper()
        if not 1 <= hour <= 12 or minute > 59:
            raise TimeParseError(f"Invalid 12-hour time: {value!r}")
        if meridiem == "PM" and hour != 12:
            hour += 12
        elif meridiem == "AM" and hour == 12:
            hour = 0
        return time(hour, minute)

    match = _TIME_24H_RE.match(value)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2))
        second = int(match.group(3) or 0)
        if hour > 23 or minute > 59 or second > 59:
            raise TimeParseError(f"Invalid 24-hour time: {value!r}")
        return time(hour, minute, second)

    raise TimeParseError(f"Unable to parse time: {value!r}. Expected e.g. '9:00 AM' or '18:00'.")


def format_time_12h(value: time | datetime) -> str:
    if isinstance(value, datetime):
        value = normalize_ts(value).astimezone(attendance_timezone()).time()
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {meridiem}"


def normalize_time_string(value: str) -> str:
    """Canonical 12-hour form of a stored timing string."""
    return format_time_12h(parse_time_of_day(value))


def local_date(ts: datetime) -> date:
    return normalize_ts(ts).astimezone(attendance_timezone()).date()


def local_datetime_on(day: date, time_value: str | time) -> datetime:
    """Aware UTC datetime for ``time_value`` on local calendar ``day``."""
    parsed = parse_time_of_day(time_value) if isinstance(time_value, str) else time_value
    local_dt = datetime.combine(day, parsed, tzinfo=attendance_timezone())
    return local_dt.astimezone(timezone.utc)


def local_day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    tz = attendance_timezone()
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = local_start + timedelta(days=1)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def local_end_of_day_utc(ts: datetime) -> datetime:
    """Last representable instant of the local day containing ``ts``."""
    _, next_day_start = local_day_bounds_utc(local_date(ts))
    return next_day_start - timedelta(microseconds=1)


def hours_between(start: datetime, end: datetime) -> float:
    seconds = (normalize_ts(end) - normalize_ts(start)).total_seconds()
    return round(max(0.0, seconds) / 3600, 2)


def month_bounds(month: int, year: int) -> tuple[date, date]:
    first_day = date(year, month, 1)
    next_month = date(year + (month // 12), (month % 12) + 1, 1)
    return first_day, next_month - timedelta(days=1)


def format_local_dt(value: datetime | None) -> str:
    if value is None:
        return "-"
    return normalize_ts(value).astimezone(attendance_timezone()).strftime("%Y-%m-%d %I:%M %p")
