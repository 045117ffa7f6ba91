"""
Frame Record
============

One radar frame tracked by the Frame Sequence, with its loading state
machine.

Design Rules:
    - Identity (key, timestamps, kind) is fixed at creation
    - The image is present iff the state is SUCCESS
    - attempt_count never decreases; a fresh placeholder starts at 0
    - Results are only accepted while a fetch is in flight, so a SUCCESS
      record is never overwritten by a stale or duplicate result
    - Illegal transitions are refused (return False) and logged
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from radarloop.models.errors import FrameFetchError
from radarloop.models.frame_key import FrameKey, FrameKind
from radarloop.models.loading_state import LoadingPhase, LoadingState
from radarloop.models.output import FrameStatus


logger = logging.getLogger(__name__)


class ImageSource(str, Enum):
    """Where a record's image came from."""

    CACHE = "cache"
    NETWORK = "network"
    UNKNOWN = "unknown"


class FrameRecord:
    """
    Loading state and payload of one frame.

    Attributes:
        state: Current LoadingState
        attempt_count: Failed attempts so far
        image: Image bytes (SUCCESS only)
        start_time: When the current/last fetch started
        end_time: When the last result was applied
        last_error: Last failure cause
        is_cached: Image was served from the cache
        image_source: Provenance of the image
    """

    def __init__(self, key: FrameKey, max_attempts: int) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self._key = key
        self._max_attempts = max_attempts

        self.state: LoadingState = LoadingState.pending()
        self.attempt_count: int = 0
        self.image: Optional[bytes] = None
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.last_error: Optional[FrameFetchError] = None
        self.is_cached: bool = False
        self.image_source: ImageSource = ImageSource.UNKNOWN

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    def key(self) -> FrameKey:
        return self._key

    @property
    def kind(self) -> FrameKind:
        return self._key.kind

    @property
    def timestamp(self) -> datetime:
        """Time depicted by the frame (target timestamp)."""
        return self._key.target

    @property
    def source_timestamp(self) -> datetime:
        return self._key.source

    @property
    def offset_minutes(self) -> int:
        return self._key.offset_minutes

    @property
    def is_forecast(self) -> bool:
        return self._key.is_forecast

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    # =========================================================================
    # Derived state
    # =========================================================================

    @property
    def is_loading(self) -> bool:
        return self.state.is_in_flight

    @property
    def has_succeeded(self) -> bool:
        return self.state.phase is LoadingPhase.SUCCESS

    @property
    def has_failed(self) -> bool:
        return self.state.phase is LoadingPhase.FAILED

    @property
    def should_retry(self) -> bool:
        """Failed with a retryable error and attempts remaining."""
        if not self.has_failed:
            return False
        if self.state.error is not None and not self.state.error.retryable:
            return False
        return self.attempt_count < self._max_attempts

    @property
    def load_duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    # =========================================================================
    # Transitions
    # =========================================================================

    def begin_fetch(self, now: datetime, is_retry: bool = False) -> bool:
        """PENDING -> LOADING, or FAILED -> RETRYING when is_retry."""
        if is_retry:
            if not self.has_failed:
                return self._refuse("retry")
            self.state = LoadingState.retrying(self.attempt_count)
        else:
            if self.state.phase is not LoadingPhase.PENDING:
                return self._refuse("load")
            self.state = LoadingState.loading()

        self.start_time = now
        self.end_time = None
        return True

    def succeed(self, data: bytes, now: datetime, from_cache: bool = False) -> bool:
        """LOADING/RETRYING -> SUCCESS."""
        if not self.is_loading:
            return self._refuse("success")

        self.image = data
        self.state = LoadingState.success()
        self.end_time = now
        self.last_error = None
        self.is_cached = from_cache
        self.image_source = ImageSource.CACHE if from_cache else ImageSource.NETWORK
        return True

    def fail(self, error: FrameFetchError, now: datetime) -> bool:
        """LOADING/RETRYING -> FAILED with one more attempt counted."""
        if not self.is_loading:
            return self._refuse("failure")

        self.attempt_count += 1
        self.state = LoadingState.failed(error, self.attempt_count)
        self.last_error = error
        self.end_time = now
        return True

    def cancel(self) -> bool:
        """LOADING/RETRYING -> PENDING. Cancellation is not a failure."""
        if not self.is_loading:
            return False

        self.state = LoadingState.pending()
        self.start_time = None
        self.end_time = None
        self.last_error = None
        return True

    def skip(self) -> bool:
        """PENDING/FAILED -> SKIPPED (terminal, not an error)."""
        if self.state.phase not in (LoadingPhase.PENDING, LoadingPhase.FAILED):
            return self._refuse("skip")
        self.state = LoadingState.skipped()
        return True

    def _refuse(self, transition: str) -> bool:
        logger.debug(f"Ignoring {transition} for {self._key} in state {self.state!r}")
        return False

    # =========================================================================
    # Views
    # =========================================================================

    def to_status(self) -> FrameStatus:
        """Renderer-facing status of this record."""
        return FrameStatus(
            key=self._key.cache_key,
            kind=self.kind,
            timestamp=self.timestamp,
            source_timestamp=self.source_timestamp,
            offset_minutes=self.offset_minutes,
            state=self.state.phase,
            attempt_count=self.attempt_count,
            error_code=self.last_error.code if self.last_error is not None else None,
            image_source=self.image_source.value,
            load_duration_seconds=self.load_duration,
        )

    def __repr__(self) -> str:
        return f"FrameRecord({self._key}, {self.state!r}, attempts={self.attempt_count})"
