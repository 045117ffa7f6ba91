"""
Frame Key
=========

Identity of a fetchable, cacheable radar artifact.

A FrameKey is the tuple (kind, source timestamp, target timestamp):
    - Observed: source == target, the measured frame itself
    - Forecast: target = source + offset, predicted from an observed frame

Cache Key Format:
    Observed -> "20250915_1205"
    Forecast -> "20250915_1205-20250915_1235"

Design Rules:
    - Keys are immutable and hashable (used in dicts across the pipeline)
    - Timestamps are normalized to aware UTC at minute granularity, so
      equality IS the minute-granularity match
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from radarloop.timeline.radar_time import format_radar_timestamp, truncate_to_minute


class FrameKind(str, Enum):
    """Kind of radar frame."""

    OBSERVED = "observed"
    FORECAST = "forecast"


@dataclass(frozen=True, slots=True)
class FrameKey:
    """
    Unique identity of one radar artifact.

    Attributes:
        kind: Observed or forecast
        source: Observed timestamp the artifact derives from
        target: Time the image depicts
        offset_minutes: Forecast offset (0 for observed frames)
    """

    kind: FrameKind
    source: datetime
    target: datetime
    offset_minutes: int = field(default=0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", truncate_to_minute(self.source))
        object.__setattr__(self, "target", truncate_to_minute(self.target))

        if self.kind is FrameKind.OBSERVED:
            if self.source != self.target or self.offset_minutes != 0:
                raise ValueError("observed frames must have source == target and no offset")
        elif self.offset_minutes <= 0:
            raise ValueError("forecast offset must be positive")

    @classmethod
    def observed(cls, timestamp: datetime) -> "FrameKey":
        """Key for the observed frame at timestamp."""
        return cls(FrameKind.OBSERVED, timestamp, timestamp)

    @classmethod
    def forecast(cls, source: datetime, offset_minutes: int) -> "FrameKey":
        """Key for the forecast made at source for source + offset."""
        return cls(
            FrameKind.FORECAST,
            source,
            source + timedelta(minutes=offset_minutes),
            offset_minutes,
        )

    @property
    def is_forecast(self) -> bool:
        return self.kind is FrameKind.FORECAST

    @property
    def cache_key(self) -> str:
        """External string key, also used as the cache file stem."""
        if self.is_forecast:
            return f"{format_radar_timestamp(self.source)}-{format_radar_timestamp(self.target)}"
        return format_radar_timestamp(self.target)

    def __str__(self) -> str:
        if self.is_forecast:
            return f"forecast+{self.offset_minutes}({self.cache_key})"
        return f"observed({self.cache_key})"
