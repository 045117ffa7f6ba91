"""
Timeline Module
===============

Radar grid time helpers shared by every pipeline stage.

Example:
    from radarloop.timeline import radar_timestamps, utc_now

    timestamps = radar_timestamps(utc_now(), count=10, interval_minutes=5)
"""

from radarloop.timeline.radar_time import (
    RADAR_GRID_MINUTES,
    as_utc,
    floor_to_interval,
    forecast_offsets,
    format_radar_timestamp,
    is_radar_update_time,
    parse_radar_timestamp,
    radar_timestamps,
    seconds_until_next_update,
    timestamp_from_filename,
    truncate_to_minute,
    utc_now,
)


__all__ = [
    "RADAR_GRID_MINUTES",
    "as_utc",
    "floor_to_interval",
    "forecast_offsets",
    "format_radar_timestamp",
    "is_radar_update_time",
    "parse_radar_timestamp",
    "radar_timestamps",
    "seconds_until_next_update",
    "timestamp_from_filename",
    "truncate_to_minute",
    "utc_now",
]
