"""
Fetch Result Types
==================

Value types exchanged between the Fetch Client and its callers.

Design Rules:
    - A FetchResult carries EITHER image bytes OR an error, never both
    - Results are matched to frames by key, never by position
    - Priority is advisory: it orders requests under contention only
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from radarloop.models.errors import FetchCancelledError, FrameFetchError
from radarloop.models.frame_key import FrameKey
from radarloop.timeline.radar_time import as_utc


HIGHEST_PRIORITY_MAX_AGE_SECONDS = 5 * 60
NORMAL_PRIORITY_MAX_AGE_SECONDS = 30 * 60


@dataclass(frozen=True, slots=True)
class FetchResult:
    """
    Outcome of fetching one frame.

    Attributes:
        key: Frame the result belongs to
        data: Image bytes on success
        error: Failure cause on failure
        load_time: Seconds spent (0 for cache hits)
        from_cache: Served by the Cache Store
    """

    key: FrameKey
    data: Optional[bytes] = None
    error: Optional[FrameFetchError] = None
    load_time: float = 0.0
    from_cache: bool = False

    def __post_init__(self) -> None:
        if (self.data is None) == (self.error is None):
            raise ValueError("FetchResult needs exactly one of data or error")

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, FetchCancelledError)

    def __repr__(self) -> str:
        outcome = f"{len(self.data)} bytes" if self.data is not None else repr(self.error)
        return (
            f"FetchResult({self.key}, {outcome}, "
            f"load_time={self.load_time:.3f}, from_cache={self.from_cache})"
        )


@dataclass(frozen=True, slots=True)
class LoadingStrategy:
    """
    Concurrency of a multi-frame fetch.

    Use LoadingStrategy.sequential() for observed frames (newest lands
    first) and LoadingStrategy.parallel(n) for forecast fan-out.
    """

    max_concurrent: int = 1

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

    @classmethod
    def sequential(cls) -> "LoadingStrategy":
        return cls(1)

    @classmethod
    def parallel(cls, max_concurrent: int) -> "LoadingStrategy":
        return cls(max_concurrent)

    @property
    def is_sequential(self) -> bool:
        return self.max_concurrent == 1


class RequestPriority(int, Enum):
    """
    Coarse request priority, lower value = more urgent.

    Values are RFC 9218 urgency levels sent in the Priority header.
    """

    HIGHEST = 0
    NORMAL = 3
    LOWEST = 6

    @property
    def header_value(self) -> str:
        return f"u={self.value}"


def determine_priority(key: FrameKey, now: datetime) -> RequestPriority:
    """
    Priority from frame kind and age.

    Observed frames younger than 5 minutes are the ones the user sees
    first; forecasts rank with recent history; older history goes last.
    """
    if key.is_forecast:
        return RequestPriority.NORMAL

    age = (as_utc(now) - key.target).total_seconds()
    if age < HIGHEST_PRIORITY_MAX_AGE_SECONDS:
        return RequestPriority.HIGHEST
    if age < NORMAL_PRIORITY_MAX_AGE_SECONDS:
        return RequestPriority.NORMAL
    return RequestPriority.LOWEST
