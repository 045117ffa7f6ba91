"""
Frame Sequence
==============

Ordered collection of frame records (observed + forecast tail) and the
Loaded View used for scrubbing and animation.

Loaded View Order:
    1. SUCCESS observed frames, newest first
    2. SUCCESS forecast frames of the newest loaded observed frame,
       ascending offset

current_index always points into the Loaded View; index 0 is the newest
observed frame.

Animation (forward in time):
    observed history -> present (index 0) -> forecast tail

    prepare_animation() positions the cursor at the start of the sweep,
    advance_frame() moves one step and reports when to stop.

Design Rules:
    - Single logical owner: records are mutated only through this class
      on the event loop thread
    - Every mutation notifies subscribers once
    - The cursor follows the displayed frame while it stays in the Loaded
      View; when that frame leaves, current_index is clamped
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from radarloop.models.errors import FrameFetchError
from radarloop.models.frame_key import FrameKey, FrameKind
from radarloop.models.loading_state import LoadingPhase
from radarloop.models.output import FrameStatus
from radarloop.sequence.record import FrameRecord
from radarloop.timeline.radar_time import truncate_to_minute, utc_now


logger = logging.getLogger(__name__)

DEFAULT_OBSERVED_MAX_ATTEMPTS = 5
DEFAULT_FORECAST_MAX_ATTEMPTS = 10

Listener = Callable[["FrameSequence"], None]


class FrameSequence:
    """
    Frame records plus the cursor into their Loaded View.

    Attributes:
        observed_max_attempts: Attempt budget of observed frames
        forecast_max_attempts: Attempt budget of forecast frames
        is_animating: Set by the animation driver
    """

    def __init__(
        self,
        observed_max_attempts: int = DEFAULT_OBSERVED_MAX_ATTEMPTS,
        forecast_max_attempts: int = DEFAULT_FORECAST_MAX_ATTEMPTS,
    ) -> None:
        self.observed_max_attempts = observed_max_attempts
        self.forecast_max_attempts = forecast_max_attempts

        self._records: List[FrameRecord] = []
        self._by_key: Dict[FrameKey, FrameRecord] = {}
        self._current_index: int = 0
        self._current_key: Optional[FrameKey] = None
        self._is_animating: bool = False
        self._listeners: List[Listener] = []

    # =========================================================================
    # Change notification
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _changed(self) -> None:
        view = self.loaded_view
        if not view:
            self._current_index = 0
            self._current_key = None
        else:
            keys = [record.key for record in view]
            if self._current_key in keys:
                self._current_index = keys.index(self._current_key)
            else:
                self._current_index = min(self._current_index, len(view) - 1)
            self._current_key = keys[self._current_index]

        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Sequence listener failed: {e}", exc_info=True)

    # =========================================================================
    # Records
    # =========================================================================

    @property
    def records(self) -> List[FrameRecord]:
        """Records in construction order (observed newest first, then forecasts)."""
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[FrameRecord]:
        return iter(list(self._records))

    def get(self, key: FrameKey) -> Optional[FrameRecord]:
        return self._by_key.get(key)

    def record_for(
        self,
        timestamp: datetime,
        kind: FrameKind = FrameKind.OBSERVED,
    ) -> Optional[FrameRecord]:
        """Record of the given kind depicting timestamp (minute granularity)."""
        target = truncate_to_minute(timestamp)
        for record in self._records:
            if record.kind is kind and record.timestamp == target:
                return record
        return None

    def max_attempts(self, kind: FrameKind) -> int:
        if kind is FrameKind.FORECAST:
            return self.forecast_max_attempts
        return self.observed_max_attempts

    @property
    def observed_records(self) -> List[FrameRecord]:
        return [record for record in self._records if record.kind is FrameKind.OBSERVED]

    @property
    def forecast_records(self) -> List[FrameRecord]:
        return [record for record in self._records if record.kind is FrameKind.FORECAST]

    @property
    def newest_observed(self) -> Optional[FrameRecord]:
        """Newest observed record regardless of state."""
        observed = self.observed_records
        if not observed:
            return None
        return max(observed, key=lambda record: record.timestamp)

    def has_image(self, key: FrameKey) -> bool:
        record = self._by_key.get(key)
        return record is not None and record.has_succeeded

    def missing_keys(self, kind: Optional[FrameKind] = None) -> List[FrameKey]:
        """Keys of PENDING records, in record order."""
        return [
            record.key
            for record in self._records
            if record.state.phase is LoadingPhase.PENDING and (kind is None or record.kind is kind)
        ]

    def in_flight(self, kind: Optional[FrameKind] = None) -> List[FrameRecord]:
        return [
            record
            for record in self._records
            if record.is_loading and (kind is None or record.kind is kind)
        ]

    def retry_candidates(self, kind: Optional[FrameKind] = None) -> List[FrameRecord]:
        return [
            record
            for record in self._records
            if record.should_retry and (kind is None or record.kind is kind)
        ]

    @property
    def is_loading(self) -> bool:
        return any(record.is_loading for record in self._records)

    # =========================================================================
    # Placeholders
    # =========================================================================

    def create_placeholders(
        self,
        timestamps: Iterable[datetime],
        forecast_offsets: Iterable[int] = (),
    ) -> List[FrameRecord]:
        """
        Rebuild the record list for a new round.

        SUCCESS records matching a wanted key are reused as-is; every other
        wanted key gets a fresh PENDING record. Forecast records are built
        for the newest timestamp only. The cursor follows the previously
        displayed frame when it is still in the Loaded View, otherwise it
        resets to 0.

        Args:
            timestamps: Observed timestamps, newest first
            forecast_offsets: Forecast offsets in minutes

        Returns:
            The new record list
        """
        previous = self.current_record
        previous_match = (previous.kind, previous.timestamp) if previous is not None else None

        stamps = list(dict.fromkeys(truncate_to_minute(ts) for ts in timestamps))
        wanted = [FrameKey.observed(ts) for ts in stamps]
        if stamps:
            newest = max(stamps)
            wanted.extend(FrameKey.forecast(newest, offset) for offset in sorted(set(forecast_offsets)))

        records: List[FrameRecord] = []
        reused = 0
        for key in wanted:
            existing = self._by_key.get(key)
            if existing is not None and existing.has_succeeded:
                records.append(existing)
                reused += 1
            else:
                records.append(FrameRecord(key, self.max_attempts(key.kind)))

        wanted_keys = set(wanted)
        dropped = sum(1 for record in self._records if record.key not in wanted_keys)
        self._records = records
        self._by_key = {record.key: record for record in records}

        self._current_index = 0
        self._current_key = None
        if previous_match is not None:
            for index, record in enumerate(self.loaded_view):
                if (record.kind, record.timestamp) == previous_match:
                    self._current_index = index
                    break

        logger.debug(
            f"Placeholders rebuilt: {len(records)} records "
            f"({reused} reused, {len(records) - reused} pending, {dropped} dropped)"
        )
        self._changed()
        return self.records

    # =========================================================================
    # State transitions
    # =========================================================================

    def mark_loading(
        self,
        record: FrameRecord,
        now: Optional[datetime] = None,
        is_retry: bool = False,
    ) -> bool:
        """PENDING -> LOADING, or FAILED -> RETRYING for a retry."""
        changed = record.begin_fetch(now or utc_now(), is_retry=is_retry)
        if changed:
            self._changed()
        return changed

    def update_image(
        self,
        record: FrameRecord,
        data: bytes,
        from_cache: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        """Apply a successful result. Stale results (record not in flight) are ignored."""
        if self._by_key.get(record.key) is not record:
            logger.debug(f"Discarding image for detached record {record.key}")
            return False

        changed = record.succeed(data, now or utc_now(), from_cache=from_cache)
        if changed:
            self._changed()
        return changed

    def mark_failed(
        self,
        record: FrameRecord,
        error: FrameFetchError,
        now: Optional[datetime] = None,
    ) -> bool:
        changed = record.fail(error, now or utc_now())
        if changed:
            logger.warning(
                f"Frame {record.key} failed (attempt {record.attempt_count}/"
                f"{record.max_attempts}): {error}"
            )
            self._changed()
        return changed

    def mark_cancelled(self, record: FrameRecord) -> bool:
        """Return an in-flight record to PENDING."""
        changed = record.cancel()
        if changed:
            logger.info(f"Frame {record.key} cancelled, reset to pending")
            self._changed()
        return changed

    def reset_in_flight(self) -> int:
        """Return every LOADING/RETRYING record to PENDING. Returns the count."""
        reset = sum(1 for record in self._records if record.cancel())
        if reset:
            logger.info(f"Reset {reset} in-flight frames to pending")
            self._changed()
        return reset

    # =========================================================================
    # Loaded View and cursor
    # =========================================================================

    @property
    def loaded_view(self) -> List[FrameRecord]:
        """SUCCESS records in display order."""
        observed = sorted(
            (r for r in self._records if r.kind is FrameKind.OBSERVED and r.has_succeeded),
            key=lambda record: record.timestamp,
            reverse=True,
        )
        if not observed:
            return []

        source = observed[0].timestamp
        forecasts = sorted(
            (
                r
                for r in self._records
                if r.kind is FrameKind.FORECAST and r.has_succeeded and r.source_timestamp == source
            ),
            key=lambda record: record.offset_minutes,
        )
        return observed + forecasts

    @property
    def loaded_count(self) -> int:
        return len(self.loaded_view)

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def current_record(self) -> Optional[FrameRecord]:
        view = self.loaded_view
        if not view:
            return None
        return view[min(self._current_index, len(view) - 1)]

    @property
    def current_image(self) -> Optional[bytes]:
        record = self.current_record
        return record.image if record is not None else None

    @property
    def current_timestamp(self) -> Optional[datetime]:
        record = self.current_record
        return record.timestamp if record is not None else None

    @property
    def is_current_forecast(self) -> bool:
        record = self.current_record
        return record is not None and record.is_forecast

    @property
    def is_animating(self) -> bool:
        return self._is_animating

    @is_animating.setter
    def is_animating(self, value: bool) -> None:
        if self._is_animating != value:
            self._is_animating = value
            self._changed()

    def select(self, index: int) -> bool:
        """Move the cursor to index of the Loaded View."""
        if not 0 <= index < self.loaded_count:
            return False
        if index != self._current_index:
            self._move_to(index)
        return True

    def reset_to_newest(self) -> None:
        self.select(0)

    def next_frame(self) -> None:
        """Step toward index 0, wrapping to the end of the Loaded View."""
        count = self.loaded_count
        if count == 0:
            return
        self._move_to(self._current_index - 1 if self._current_index > 0 else count - 1)

    def previous_frame(self) -> None:
        """Step away from index 0, wrapping to the start of the Loaded View."""
        count = self.loaded_count
        if count == 0:
            return
        self._move_to((self._current_index + 1) % count)

    def _move_to(self, index: int) -> None:
        self._current_index = index
        self._current_key = None
        self._changed()

    # =========================================================================
    # Animation
    # =========================================================================

    def prepare_animation(self) -> bool:
        """
        Position the cursor at the start of a forward sweep.

        Returns:
            False if fewer than 2 frames are loaded (animation impossible)
        """
        view = self.loaded_view
        if len(view) < 2:
            return False

        index = min(self._current_index, len(view) - 1)
        observed_count = sum(1 for record in view if record.kind is FrameKind.OBSERVED)

        if view[index].is_forecast:
            if index == len(view) - 1:
                self._move_to(observed_count)
        elif index == 0:
            self._move_to(observed_count - 1)
        return True

    def advance_frame(self) -> bool:
        """
        Advance one step forward in time.

        Observed frames move toward index 0, then into the forecast tail
        when one is loaded; forecast frames move toward the last offset.

        Returns:
            True when the animation should stop
        """
        view = self.loaded_view
        if len(view) < 2:
            return True

        index = min(self._current_index, len(view) - 1)
        last = len(view) - 1
        has_forecasts = any(record.is_forecast for record in view)

        if view[index].is_forecast:
            if index >= last:
                return True
            self._move_to(index + 1)
            return index + 1 >= last

        if index > 0:
            self._move_to(index - 1)
            return index - 1 == 0 and not has_forecasts

        if has_forecasts:
            first_forecast = sum(1 for record in view if record.kind is FrameKind.OBSERVED)
            self._move_to(first_forecast)
            return first_forecast >= last
        return True

    # =========================================================================
    # Views
    # =========================================================================

    def statuses(self) -> List[FrameStatus]:
        return [record.to_status() for record in self._records]

    def __repr__(self) -> str:
        return (
            f"FrameSequence(records={len(self._records)}, loaded={self.loaded_count}, "
            f"index={self._current_index})"
        )
