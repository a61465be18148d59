"""
Time parsing and day/window arithmetic
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, List, Tuple, Union
from zoneinfo import ZoneInfo

from .errors import MalformedInputError

MINUTES_PER_DAY = 1440

Timestamp = Union[int, float, str, datetime]


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Create tzinfo from an IANA timezone name

    Raises:
        ValueError: If the timezone name is unknown on this system
    """
    try:
        return ZoneInfo(tz_name)
    except Exception as exc:  # ZoneInfoNotFoundError / ValueError, platform dependent
        raise ValueError(f"Invalid timezone: {tz_name!r}") from exc


def parse_timestamp(value: Any) -> datetime:
    """Parse epoch milliseconds, ISO-8601 text or a datetime into an aware UTC datetime

    Naive values are treated as UTC.

    Raises:
        MalformedInputError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise MalformedInputError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedInputError(f"Epoch milliseconds out of range: {value!r}") from exc
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise MalformedInputError("Empty timestamp")
        if text.lstrip("-").isdigit():
            # Epoch milliseconds sent as text
            return parse_timestamp(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedInputError(f"Unparseable timestamp: {value!r}") from exc
    else:
        raise MalformedInputError(f"Unsupported timestamp type: {type(value).__name__}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_ymd(ymd: str) -> date:
    try:
        return date.fromisoformat(ymd)
    except ValueError as exc:
        raise MalformedInputError(f"Expected YYYY-MM-DD, got {ymd!r}") from exc


def day_bounds(ymd: str, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Local midnight of ``ymd`` and of the following day, both aware"""
    day = parse_ymd(ymd)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def ymd_for(dt: datetime, tz: tzinfo) -> str:
    return dt.astimezone(tz).date().isoformat()


def minutes_from_midnight(dt: datetime, ymd: str, tz: tzinfo) -> int:
    """Minutes between local midnight of ``ymd`` and ``dt``, clamped to [0, 1440]"""
    midnight, _ = day_bounds(ymd, tz)
    minutes = round((dt - midnight).total_seconds() / 60.0)
    return max(0, min(minutes, MINUTES_PER_DAY))


def minutes_to_datetime(minutes: float, ymd: str, tz: tzinfo) -> datetime:
    midnight, _ = day_bounds(ymd, tz)
    return midnight + timedelta(minutes=minutes)


def floor_to_window(dt: datetime, window_minutes: int) -> datetime:
    """Align ``dt`` down to a window boundary on the UTC clock"""
    window_ms = window_minutes * 60_000
    ms = epoch_ms(dt)
    return datetime.fromtimestamp((ms - ms % window_ms) / 1000.0, tz=timezone.utc)


def next_window_boundary(dt: datetime, window_minutes: int) -> datetime:
    return floor_to_window(dt, window_minutes) + timedelta(minutes=window_minutes)


def windows_between(
    start: datetime,
    end: datetime,
    window_minutes: int,
) -> List[Tuple[datetime, datetime]]:
    """Consecutive aligned windows covering [start, end), oldest first"""
    step = timedelta(minutes=window_minutes)
    cursor = floor_to_window(start, window_minutes)
    windows: List[Tuple[datetime, datetime]] = []
    while cursor + step <= end:
        windows.append((cursor, cursor + step))
        cursor += step
    return windows
