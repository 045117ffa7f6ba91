"""
Sequence Module
===============

Frame records, their loading state machine and the Loaded View.

Example:
    sequence = FrameSequence(observed_max_attempts=5, forecast_max_attempts=10)
    sequence.create_placeholders(timestamps, forecast_offsets=[10, 20, 30])

    for record in sequence.loaded_view:
        render(record.image, record.timestamp)
"""

from radarloop.sequence.record import FrameRecord, ImageSource
from radarloop.sequence.sequence import (
    DEFAULT_FORECAST_MAX_ATTEMPTS,
    DEFAULT_OBSERVED_MAX_ATTEMPTS,
    FrameSequence,
)


__all__ = [
    "DEFAULT_FORECAST_MAX_ATTEMPTS",
    "DEFAULT_OBSERVED_MAX_ATTEMPTS",
    "FrameRecord",
    "FrameSequence",
    "ImageSource",
]
