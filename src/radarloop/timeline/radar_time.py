"""
Radar Grid Time
===============

UTC time arithmetic for the radar publication grid.

The upstream publishes a new observed frame every 5 minutes (the radar
grid). Every timestamp handled by the pipeline is a UTC datetime aligned
to whole minutes, and every observed timestamp is aligned to the grid.

Timestamp String Format:
    yyyyMMdd_HHmm (UTC), e.g. "20250915_1205"
"""

import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional


RADAR_GRID_MINUTES = 5
RADAR_TIMESTAMP_FORMAT = "%Y%m%d_%H%M"
FILENAME_TIMESTAMP_PATTERN = re.compile(r"(\d{8}_\d{4})")


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def truncate_to_minute(dt: datetime) -> datetime:
    """Drop seconds and microseconds."""
    return as_utc(dt).replace(second=0, microsecond=0)


def floor_to_interval(dt: datetime, minutes: int = RADAR_GRID_MINUTES) -> datetime:
    """
    Round a datetime down to the nearest interval boundary within the hour.

    Args:
        dt: Datetime to round
        minutes: Interval in minutes (should divide 60)

    Returns:
        Aware UTC datetime on the interval boundary
    """
    if minutes <= 0:
        raise ValueError("minutes must be positive")

    dt = truncate_to_minute(dt)
    return dt.replace(minute=(dt.minute // minutes) * minutes)


def radar_timestamps(
    now: datetime,
    count: int,
    interval_minutes: int = RADAR_GRID_MINUTES,
) -> List[datetime]:
    """
    Build the observed timestamps for one fetch round, newest first.

    The anchor is always the 5-minute grid time, whatever the display
    interval: forecasts only exist for the latest 5-minute frame. The
    display interval only controls how far back each step goes.

    Args:
        now: Current time
        count: Number of timestamps
        interval_minutes: Step between consecutive timestamps

    Returns:
        List of aware UTC datetimes in descending order
    """
    if count < 0:
        raise ValueError("count must be non-negative")
    if interval_minutes <= 0:
        raise ValueError("interval_minutes must be positive")

    latest = floor_to_interval(now, RADAR_GRID_MINUTES)
    step = timedelta(minutes=interval_minutes)
    return [latest - i * step for i in range(count)]


def forecast_offsets(horizon_minutes: int, interval_minutes: int) -> List[int]:
    """Forecast offsets in ascending order: interval, 2*interval, ..., horizon."""
    if interval_minutes <= 0 or horizon_minutes <= 0:
        return []
    return list(range(interval_minutes, horizon_minutes + 1, interval_minutes))


def format_radar_timestamp(dt: datetime) -> str:
    """Format as yyyyMMdd_HHmm in UTC."""
    return as_utc(dt).strftime(RADAR_TIMESTAMP_FORMAT)


def parse_radar_timestamp(value: str) -> Optional[datetime]:
    """Parse yyyyMMdd_HHmm (UTC). Returns None when malformed."""
    if not FILENAME_TIMESTAMP_PATTERN.fullmatch(value or ""):
        return None
    try:
        parsed = datetime.strptime(value, RADAR_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def timestamp_from_filename(filename: str) -> Optional[datetime]:
    """Extract the canonical timestamp from a radar filename or URL."""
    match = FILENAME_TIMESTAMP_PATTERN.search(filename or "")
    if match is None:
        return None
    return parse_radar_timestamp(match.group(1))


def is_radar_update_time(
    now: datetime,
    latency_offset_seconds: int = 20,
    window_seconds: int = 30,
) -> bool:
    """
    Whether the clock has just crossed a radar grid boundary.

    True inside [offset, offset + window] seconds after a 5-minute mark,
    which leaves the server time to publish the new frame.
    """
    now = as_utc(now)
    if now.minute % RADAR_GRID_MINUTES != 0:
        return False
    return latency_offset_seconds <= now.second <= latency_offset_seconds + window_seconds


def seconds_until_next_update(now: datetime, latency_offset_seconds: int = 20) -> float:
    """Seconds until the next grid boundary plus latency offset, in (0, 300]."""
    now = as_utc(now)
    period = RADAR_GRID_MINUTES * 60
    minutes_until_next = RADAR_GRID_MINUTES - (now.minute % RADAR_GRID_MINUTES)
    seconds = minutes_until_next * 60 - now.second + latency_offset_seconds

    if seconds > period:
        seconds -= period
    return float(seconds)
