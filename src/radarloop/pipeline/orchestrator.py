"""
Pipeline Orchestrator
=====================

Drives fetch rounds, applies results to the Frame Sequence, schedules
retries and restarts, follows up with forecast passes, triggers rounds on
radar grid boundaries and runs the animation driver.

Round Flow:
    1. Compute the observed timestamps, rebuild placeholders
    2. Fetch frames lacking SUCCESS, sequentially (newest first)
    3. Apply each result by key; stale results are discarded
    4. Force records left in flight into FAILED (missing result)
    5. Arm a retry timer for retryable failures, or a restart timer when
       nothing observed succeeded and nothing is retryable
    6. Start the forecast pass for the newest SUCCESS observed frame

Design Rules:
    - Runs on a single event loop; records are only mutated here and in
      FrameSequence
    - Every round belongs to an epoch; cancel_all() starts a new epoch,
      so results and timers of a cancelled round are ignored
    - Cancellation is never reported as an error
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Coroutine, List, Optional, Sequence, Set

from radarloop.fetch.client import FetchClient
from radarloop.fetch.result import FetchResult, LoadingStrategy
from radarloop.models.errors import MissingResultError
from radarloop.models.frame_key import FrameKey, FrameKind
from radarloop.models.loading_state import LoadingPhase
from radarloop.models.output import RendererSnapshot
from radarloop.observability.metrics import PipelineMetrics
from radarloop.pipeline.scheduler import Scheduler, TimerHandle
from radarloop.sequence.sequence import FrameSequence
from radarloop.timeline.radar_time import (
    RADAR_GRID_MINUTES,
    floor_to_interval,
    forecast_offsets,
    is_radar_update_time,
    radar_timestamps,
)


logger = logging.getLogger(__name__)

ALLOWED_INTERVALS = (5, 10, 15, 20)
ROUND_FAILED_MESSAGE = "Failed to fetch radar images"


@dataclass(frozen=True)
class PipelineOptions:
    """
    Tunables of the orchestrator.

    Attributes:
        image_count: Observed frames per round
        interval_minutes: Step between observed frames
        forecast_enabled: Run forecast passes
        forecast_horizon_minutes: Furthest forecast offset
        forecast_interval_minutes: Step between forecast offsets
        forecast_max_concurrent: Parallelism of forecast passes
        retry_delay: Seconds before retrying failed observed frames
        forecast_retry_delay: Seconds before retrying failed forecasts
        restart_interval: Seconds before restarting a round with no success
        check_interval: Seconds between periodic update checks
        server_latency_offset: Seconds after a grid boundary new data appears
        update_window: Seconds after the offset during which a check triggers
        animation_interval: Seconds between animation frames
    """

    image_count: int = 10
    interval_minutes: int = 5
    forecast_enabled: bool = True
    forecast_horizon_minutes: int = 60
    forecast_interval_minutes: int = 10
    forecast_max_concurrent: int = 3
    retry_delay: float = 5.0
    forecast_retry_delay: float = 15.0
    restart_interval: float = 10.0
    check_interval: float = 10.0
    server_latency_offset: int = 20
    update_window: int = 30
    animation_interval: float = 0.5

    def __post_init__(self) -> None:
        if self.image_count < 1:
            raise ValueError("image_count must be >= 1")
        if self.interval_minutes not in ALLOWED_INTERVALS:
            raise ValueError(f"interval_minutes must be one of {ALLOWED_INTERVALS}")
        if self.forecast_max_concurrent < 1:
            raise ValueError("forecast_max_concurrent must be >= 1")


@dataclass
class PassOutcome:
    """Counts of one fetch pass."""

    requested: int = 0
    successes: int = 0
    failures: int = 0
    cancellations: int = 0


class PipelineOrchestrator:
    """
    Owner of the fetch/retry/animation control flow for one FrameSequence.

    Attributes:
        sequence: Frame records and Loaded View
        client: Fetch Client
        scheduler: Clock and timers
        options: Tunables
        metrics: Operational counters
        error_message: Last user-visible error (None when healthy)
        last_update_time: Completion time of the last observed pass
    """

    def __init__(
        self,
        sequence: FrameSequence,
        client: FetchClient,
        scheduler: Scheduler,
        options: Optional[PipelineOptions] = None,
        metrics: Optional[PipelineMetrics] = None,
    ) -> None:
        self.sequence = sequence
        self.client = client
        self.scheduler = scheduler
        self.options = options or PipelineOptions()
        self.metrics = metrics or PipelineMetrics()

        self.interval_minutes = self.options.interval_minutes
        self.error_message: Optional[str] = None
        self.last_update_time: Optional[datetime] = None

        self._running = False
        self._epoch = 0
        self._tasks: Set[asyncio.Task] = set()
        self._active_forecast_source: Optional[datetime] = None
        self._last_trigger_boundary: Optional[datetime] = None

        self._retry_timer: Optional[TimerHandle] = None
        self._forecast_retry_timer: Optional[TimerHandle] = None
        self._restart_timer: Optional[TimerHandle] = None
        self._tick_timer: Optional[TimerHandle] = None
        self._animation_timer: Optional[TimerHandle] = None

        logger.info(
            f"PipelineOrchestrator initialized: {self.options.image_count} frames "
            f"every {self.interval_minutes} min, forecast={self.options.forecast_enabled}"
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_loading(self) -> bool:
        """A fetch is in progress for at least one frame."""
        return self.sequence.is_loading

    @property
    def active_forecast_source(self) -> Optional[datetime]:
        return self._active_forecast_source

    def start(self) -> None:
        """Run the initial round and arm the periodic update check."""
        if self._running:
            return
        self._running = True
        self.refresh(force=True)

        now = self.scheduler.now()
        if is_radar_update_time(
            now,
            latency_offset_seconds=self.options.server_latency_offset,
            window_seconds=self.options.update_window,
        ):
            self._last_trigger_boundary = floor_to_interval(now, RADAR_GRID_MINUTES)
        self._arm_tick()
        logger.info("Pipeline started")

    def stop(self) -> None:
        """Stop timers and cancel all work. Loaded frames are kept."""
        if not self._running:
            return
        self._running = False
        self.stop_animation()
        self._cancel_timer("_tick_timer")
        self.cancel_all()
        logger.info("Pipeline stopped")

    async def aclose(self) -> None:
        """Stop and wait for cancelled tasks to unwind."""
        self.stop()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait until no pass task is running (including follow-ups)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Commands
    # =========================================================================

    def refresh(self, force: bool = False) -> bool:
        """
        Start a new round.

        A non-forced refresh is skipped while frames are loading. A forced
        refresh cancels in-flight work (including the forecast pass) and
        restarts unconditionally; SUCCESS frames are reused either way.

        Returns:
            True if a round was started
        """
        if not force and self.is_loading:
            logger.info("Refresh skipped: fetch already in progress")
            return False

        self.cancel_all()
        self._start_round()
        return True

    def set_interval(self, minutes: int) -> None:
        """
        Change the step between observed frames and restart the round.

        Raises:
            ValueError: If minutes is not an allowed interval
        """
        if minutes not in ALLOWED_INTERVALS:
            raise ValueError(f"Interval must be one of {ALLOWED_INTERVALS}, got {minutes}")

        self.interval_minutes = minutes
        logger.info(f"Radar interval set to {minutes} minutes")
        self.refresh(force=True)

    def cancel_all(self) -> int:
        """
        Cancel every fetch, every armed retry/restart timer, and return
        in-flight records to PENDING.

        Idempotent. Returns the number of records reset.
        """
        self._epoch += 1

        for task in list(self._tasks):
            task.cancel()
        self.client.cancel_all()

        self._cancel_timer("_retry_timer")
        self._cancel_timer("_forecast_retry_timer")
        self._cancel_timer("_restart_timer")
        self._active_forecast_source = None

        return self.sequence.reset_in_flight()

    # =========================================================================
    # Rounds
    # =========================================================================

    def _start_round(self) -> None:
        now = self.scheduler.now()
        self.metrics.rounds_started += 1
        self.error_message = None

        was_on_newest = self.sequence.current_index == 0
        timestamps = radar_timestamps(now, self.options.image_count, self.interval_minutes)
        offsets: List[int] = []
        if self.options.forecast_enabled:
            offsets = forecast_offsets(
                self.options.forecast_horizon_minutes,
                self.options.forecast_interval_minutes,
            )

        self.sequence.create_placeholders(timestamps, offsets)
        keys = self._mark_loading(self.sequence.missing_keys(FrameKind.OBSERVED), is_retry=False)

        logger.info(
            f"Round started at {now.isoformat()}: {len(timestamps)} observed frames, "
            f"{len(keys)} to fetch"
        )

        if not keys:
            self.last_update_time = now
            self._maybe_start_forecasts()
            return

        self._spawn(self._observed_pass(keys, was_on_newest, self._epoch))

    async def _observed_pass(
        self,
        keys: Sequence[FrameKey],
        follow_newest: bool,
        epoch: int,
    ) -> None:
        started = time.monotonic()
        outcome = await self._run_pass(keys, LoadingStrategy.sequential(), epoch, follow_newest)
        if epoch != self._epoch:
            return

        self.metrics.last_round_duration = time.monotonic() - started
        self.last_update_time = self.scheduler.now()
        logger.info(
            f"Observed pass finished: {outcome.successes}/{outcome.requested} loaded, "
            f"{outcome.failures} failed, {outcome.cancellations} cancelled"
        )

        if outcome.successes:
            self.error_message = None
        elif outcome.failures:
            self.error_message = ROUND_FAILED_MESSAGE

        if self.sequence.retry_candidates(FrameKind.OBSERVED):
            self._schedule_retry(FrameKind.OBSERVED)
        elif outcome.failures and not any(
            record.has_succeeded for record in self.sequence.observed_records
        ):
            self._schedule_restart()

        self._maybe_start_forecasts()

    def _maybe_start_forecasts(self) -> None:
        if not self.options.forecast_enabled:
            return
        if self.sequence.in_flight(FrameKind.OBSERVED):
            return

        newest = self.sequence.newest_observed
        if newest is None or not newest.has_succeeded:
            return

        source = newest.timestamp
        if self._active_forecast_source == source:
            logger.info(f"Forecast pass already active for {source.isoformat()}, skipping")
            return

        pending = [
            record.key
            for record in self.sequence.forecast_records
            if record.source_timestamp == source and record.state.phase is LoadingPhase.PENDING
        ]
        keys = self._mark_loading(pending, is_retry=False)
        if not keys:
            return

        self._active_forecast_source = source
        self.metrics.forecast_passes += 1
        logger.info(f"Forecast pass started for {source.isoformat()}: {len(keys)} frames")
        self._spawn(self._forecast_pass(keys, source, self._epoch))

    async def _forecast_pass(self, keys: Sequence[FrameKey], source: datetime, epoch: int) -> None:
        strategy = LoadingStrategy.parallel(self.options.forecast_max_concurrent)
        outcome = await self._run_pass(keys, strategy, epoch)
        if epoch != self._epoch:
            return

        if self._active_forecast_source == source:
            self._active_forecast_source = None

        logger.info(
            f"Forecast pass finished for {source.isoformat()}: "
            f"{outcome.successes}/{outcome.requested} loaded, {outcome.failures} failed"
        )
        if self.sequence.retry_candidates(FrameKind.FORECAST):
            self._schedule_retry(FrameKind.FORECAST)

    async def _run_pass(
        self,
        keys: Sequence[FrameKey],
        strategy: LoadingStrategy,
        epoch: int,
        follow_newest: bool = False,
    ) -> PassOutcome:
        outcome = PassOutcome(requested=len(keys))

        async with aclosing(self.client.fetch_many(keys, strategy)) as results:
            async for result in results:
                if epoch != self._epoch:
                    self.metrics.stale_results += 1
                    continue
                self._apply(result, outcome, follow_newest)

        if epoch != self._epoch:
            return outcome

        now = self.scheduler.now()
        for key in keys:
            record = self.sequence.get(key)
            if record is not None and record.is_loading:
                if self.sequence.mark_failed(record, MissingResultError(f"No result for {key}"), now):
                    outcome.failures += 1
                    self.metrics.failures += 1

        return outcome

    def _apply(self, result: FetchResult, outcome: PassOutcome, follow_newest: bool) -> None:
        key = result.key
        if key.is_forecast and key.source != self._active_forecast_source:
            self.metrics.stale_results += 1
            logger.debug(f"Discarding forecast result for inactive source: {key}")
            return

        record = self.sequence.get(key)
        if record is None or not record.is_loading:
            self.metrics.stale_results += 1
            logger.debug(f"Discarding stale result for {key}")
            return

        now = self.scheduler.now()
        if result.ok:
            self.sequence.update_image(record, result.data, from_cache=result.from_cache, now=now)
            outcome.successes += 1
            self.metrics.successes += 1
            if result.from_cache:
                self.metrics.cache_hits += 1
            else:
                self.metrics.network_loads += 1
                self.metrics.record_load_time(result.load_time)
            if follow_newest and not key.is_forecast:
                self.sequence.reset_to_newest()
        elif result.cancelled:
            self.sequence.mark_cancelled(record)
            outcome.cancellations += 1
            self.metrics.cancellations += 1
        else:
            self.sequence.mark_failed(record, result.error, now)
            outcome.failures += 1
            self.metrics.failures += 1

    def _mark_loading(self, keys: Sequence[FrameKey], is_retry: bool) -> List[FrameKey]:
        now = self.scheduler.now()
        marked = []
        for key in keys:
            record = self.sequence.get(key)
            if record is not None and self.sequence.mark_loading(record, now, is_retry=is_retry):
                marked.append(key)
        return marked

    # =========================================================================
    # Retry and restart timers
    # =========================================================================

    def _schedule_retry(self, kind: FrameKind) -> None:
        if kind is FrameKind.FORECAST:
            attr, delay = "_forecast_retry_timer", self.options.forecast_retry_delay
        else:
            attr, delay = "_retry_timer", self.options.retry_delay

        self._cancel_timer(attr)
        setattr(self, attr, self.scheduler.call_later(delay, partial(self._retry, kind, self._epoch)))
        self.metrics.retries_scheduled += 1
        logger.info(f"Retry of failed {kind.value} frames scheduled in {delay}s")

    def _retry(self, kind: FrameKind, epoch: int) -> None:
        if kind is FrameKind.FORECAST:
            self._forecast_retry_timer = None
        else:
            self._retry_timer = None
        if epoch != self._epoch:
            return

        if kind is FrameKind.FORECAST:
            self._retry_forecasts()
            return

        candidates = [record.key for record in self.sequence.retry_candidates(FrameKind.OBSERVED)]
        keys = self._mark_loading(candidates, is_retry=True)
        if not keys:
            return

        logger.info(f"Retrying {len(keys)} observed frames")
        follow_newest = self.sequence.current_index == 0
        self._spawn(self._observed_pass(keys, follow_newest, epoch))

    def _retry_forecasts(self) -> None:
        if self._active_forecast_source is not None:
            # A pass is running; retry once it has finished.
            self._schedule_retry(FrameKind.FORECAST)
            return

        newest = self.sequence.newest_observed
        if newest is None or not newest.has_succeeded:
            return

        source = newest.timestamp
        candidates = [
            record.key
            for record in self.sequence.retry_candidates(FrameKind.FORECAST)
            if record.source_timestamp == source
        ]
        keys = self._mark_loading(candidates, is_retry=True)
        if not keys:
            return

        self._active_forecast_source = source
        logger.info(f"Retrying {len(keys)} forecast frames for {source.isoformat()}")
        self._spawn(self._forecast_pass(keys, source, self._epoch))

    def _schedule_restart(self) -> None:
        self._cancel_timer("_restart_timer")
        delay = self.options.restart_interval
        self._restart_timer = self.scheduler.call_later(delay, partial(self._restart, self._epoch))
        self.metrics.restarts_scheduled += 1
        logger.warning(f"No radar frames loaded; restarting round in {delay}s")

    def _restart(self, epoch: int) -> None:
        self._restart_timer = None
        if epoch != self._epoch:
            return
        self.refresh(force=True)

    # =========================================================================
    # Periodic update check
    # =========================================================================

    def _arm_tick(self) -> None:
        self._tick_timer = self.scheduler.call_later(self.options.check_interval, self._tick)

    def _tick(self) -> None:
        self._tick_timer = None
        if not self._running:
            return

        try:
            self.check_for_update()
        finally:
            self._arm_tick()

    def check_for_update(self) -> bool:
        """
        Start a round if a new radar grid boundary has just passed.

        Each boundary triggers at most one round. The round starts like a
        forced refresh: an observed pass or forecast pass still running from
        the previous round is cancelled, so slow forecasts cannot hold back
        the new observed frame.

        Returns:
            True if a round was started
        """
        now = self.scheduler.now()
        if not is_radar_update_time(
            now,
            latency_offset_seconds=self.options.server_latency_offset,
            window_seconds=self.options.update_window,
        ):
            return False

        boundary = floor_to_interval(now, RADAR_GRID_MINUTES)
        if boundary == self._last_trigger_boundary:
            return False

        logger.info(f"Radar update time reached for {boundary.isoformat()}")
        self._last_trigger_boundary = boundary
        return self.refresh(force=True)

    # =========================================================================
    # Animation and scrubbing
    # =========================================================================

    @property
    def is_animating(self) -> bool:
        return self.sequence.is_animating

    def start_animation(self) -> bool:
        """
        Start forward playback from the current position.

        Returns:
            False if fewer than 2 frames are loaded
        """
        if self.sequence.is_animating:
            return True
        if not self.sequence.prepare_animation():
            logger.info("Animation needs at least 2 loaded frames")
            return False

        self.sequence.is_animating = True
        self._arm_animation()
        return True

    def stop_animation(self) -> None:
        self._cancel_timer("_animation_timer")
        self.sequence.is_animating = False

    def _arm_animation(self) -> None:
        self._animation_timer = self.scheduler.call_later(
            self.options.animation_interval,
            self._animate,
        )

    def _animate(self) -> None:
        self._animation_timer = None
        if not self.sequence.is_animating:
            return
        if self.sequence.advance_frame():
            self.stop_animation()
        else:
            self._arm_animation()

    def select(self, index: int) -> bool:
        self.stop_animation()
        return self.sequence.select(index)

    def next_frame(self) -> None:
        self.stop_animation()
        self.sequence.next_frame()

    def previous_frame(self) -> None:
        self.stop_animation()
        self.sequence.previous_frame()

    # =========================================================================
    # Views
    # =========================================================================

    def snapshot(self) -> RendererSnapshot:
        """Renderer-facing state (no image bytes)."""
        return RendererSnapshot(
            current_timestamp=self.sequence.current_timestamp,
            current_index=self.sequence.current_index,
            is_forecast=self.sequence.is_current_forecast,
            is_loading=self.is_loading,
            is_animating=self.sequence.is_animating,
            error_message=self.error_message,
            loaded_count=self.sequence.loaded_count,
            total_count=len(self.sequence),
            last_update_time=self.last_update_time,
            frames=self.sequence.statuses(),
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Pipeline task failed: {error}", exc_info=error)

    def _cancel_timer(self, attr: str) -> None:
        handle = getattr(self, attr)
        if handle is not None:
            handle.cancel()
            setattr(self, attr, None)
