"""
Pipeline Orchestrator Tests
===========================

End-to-end fetch rounds against the fake radar server, with timers on a
ManualScheduler so retries, restarts and update checks are deterministic.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import NOW, wait_until
from radarloop.fetch import FetchClient, LoadingStrategy, RadarUrlBuilder
from radarloop.models.errors import ErrorCode
from radarloop.models.frame_key import FrameKey, FrameKind
from radarloop.models.loading_state import LoadingPhase, LoadingState
from radarloop.pipeline import ManualScheduler, PipelineOptions, PipelineOrchestrator
from radarloop.pipeline.orchestrator import ROUND_FAILED_MESSAGE
from radarloop.sequence import FrameSequence


T_1205 = datetime(2025, 9, 15, 12, 5, tzinfo=timezone.utc)
T_1200 = datetime(2025, 9, 15, 12, 0, tzinfo=timezone.utc)
T_1155 = datetime(2025, 9, 15, 11, 55, tzinfo=timezone.utc)
T_1150 = datetime(2025, 9, 15, 11, 50, tzinfo=timezone.utc)


def observed(orchestrator, timestamp):
    return orchestrator.sequence.get(FrameKey.observed(timestamp))


class DroppingFetchClient(FetchClient):
    """Fetch client whose batches silently omit some keys."""

    def __init__(self, dropped, http_client: httpx.AsyncClient) -> None:
        super().__init__(RadarUrlBuilder(), http_client=http_client, clock=lambda: NOW)
        self.dropped = set(dropped)

    async def fetch_many(self, keys, strategy=LoadingStrategy.sequential()):
        for key in keys:
            if key not in self.dropped:
                yield await self.fetch(key)


class TestRounds:
    """Tests for observed rounds."""

    def test_round_loads_newest_first(self, make_pipeline, radar_server):
        orchestrator = make_pipeline()

        async def scenario():
            assert orchestrator.refresh(force=True)
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        assert [request.url.path for request in radar_server.requests] == [
            "/output/radar_20250915_1200_overlay2x.png",
            "/output/radar_20250915_1155_overlay2x.png",
            "/output/radar_20250915_1150_overlay2x.png",
        ]
        assert orchestrator.sequence.loaded_count == 3
        assert orchestrator.sequence.current_index == 0
        assert orchestrator.error_message is None
        assert orchestrator.last_update_time is not None
        assert not orchestrator.is_loading

    def test_partial_failure_then_retry(self, make_pipeline, radar_server):
        radar_server.failing.add("radar_20250915_1150_overlay")
        orchestrator = make_pipeline()
        scheduler = orchestrator.scheduler

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()

            failed = observed(orchestrator, T_1150)
            assert failed.state == LoadingState.failed(None, 1)
            assert [r.timestamp for r in orchestrator.sequence.loaded_view] == [T_1200, T_1155]
            assert orchestrator.sequence.current_index == 0
            assert orchestrator.error_message is None

            scheduler.advance(5)
            assert failed.state == LoadingState.retrying(1)

            await orchestrator.wait_idle()
            return failed

        failed = asyncio.run(scenario())

        assert failed.attempt_count == 2
        assert failed.last_error.code is ErrorCode.TRANSPORT
        assert radar_server.calls_for("radar_20250915_1150") == 2

    def test_second_round_reuses_loaded_frames(self, make_pipeline, radar_server):
        orchestrator = make_pipeline()

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()
            first = observed(orchestrator, T_1200)
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()
            return first

        first = asyncio.run(scenario())

        assert len(radar_server.requests) == 3
        assert observed(orchestrator, T_1200) is first
        assert orchestrator.metrics.rounds_started == 2

    def test_cache_hits_skip_network(self, make_pipeline, radar_server, cache_store, png_bytes):
        orchestrator = make_pipeline(cache=cache_store)

        async def scenario():
            await cache_store.put(FrameKey.observed(T_1155).cache_key, png_bytes)
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        assert radar_server.calls_for("radar_20250915_1155") == 0
        assert orchestrator.metrics.cache_hits == 1
        assert observed(orchestrator, T_1155).is_cached

    def test_key_without_result_fails_as_missing(self, radar_server):
        http = httpx.AsyncClient(transport=httpx.MockTransport(radar_server.handler))
        client = DroppingFetchClient([FrameKey.observed(T_1150)], http)
        orchestrator = PipelineOrchestrator(
            FrameSequence(),
            client,
            ManualScheduler(NOW),
            options=PipelineOptions(image_count=3, forecast_enabled=False),
        )

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()

            missing = observed(orchestrator, T_1150)
            assert missing.state.phase is LoadingPhase.FAILED
            assert missing.last_error.code is ErrorCode.MISSING_RESULT
            assert orchestrator.scheduler.pending == 1

            orchestrator.scheduler.advance(5)
            await orchestrator.wait_idle()
            return missing

        missing = asyncio.run(scenario())

        assert missing.attempt_count == 2
        assert missing.should_retry
        assert radar_server.calls_for("radar_20250915_1150") == 0
        assert [r.timestamp for r in orchestrator.sequence.loaded_view] == [T_1200, T_1155]
        assert orchestrator.metrics.retries_scheduled == 2

    def test_non_forced_refresh_skipped_while_loading(self, make_pipeline, radar_server):
        radar_server.delay = 10
        orchestrator = make_pipeline()

        async def scenario():
            orchestrator.refresh(force=True)
            skipped = orchestrator.refresh()
            orchestrator.cancel_all()
            await orchestrator.wait_idle()
            return skipped

        assert asyncio.run(scenario()) is False
        assert orchestrator.metrics.rounds_started == 1


class TestRetryBounds:
    """Tests for attempt bounds and restarts."""

    def test_observed_frame_stops_after_five_attempts(self, make_pipeline, radar_server):
        radar_server.failing.add("radar_20250915_1200")
        orchestrator = make_pipeline(options=PipelineOptions(image_count=1, forecast_enabled=False))

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()
            for _ in range(4):
                orchestrator.scheduler.advance(5)
                await orchestrator.wait_idle()

        asyncio.run(scenario())

        record = observed(orchestrator, T_1200)
        assert record.attempt_count == 5
        assert record.state.phase is LoadingPhase.FAILED
        assert not record.should_retry
        assert radar_server.calls_for("radar_20250915_1200") == 5
        assert orchestrator.metrics.retries_scheduled == 4
        assert orchestrator.metrics.restarts_scheduled == 1
        assert orchestrator.error_message == ROUND_FAILED_MESSAGE

    def test_forecast_frame_stops_after_ten_attempts(self, make_pipeline, radar_server):
        radar_server.fail_forecasts = True
        orchestrator = make_pipeline(
            options=PipelineOptions(
                image_count=1,
                forecast_enabled=True,
                forecast_horizon_minutes=10,
                forecast_interval_minutes=10,
            )
        )

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()
            for _ in range(9):
                orchestrator.scheduler.advance(15)
                await orchestrator.wait_idle()
            orchestrator.scheduler.advance(15)
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        forecast = orchestrator.sequence.get(FrameKey.forecast(T_1200, 10))
        assert forecast.attempt_count == 10
        assert not forecast.should_retry
        assert radar_server.calls_for("forecast") == 10
        assert orchestrator.sequence.loaded_count == 1
        assert orchestrator.error_message is None

    def test_restart_when_nothing_loaded(self, make_pipeline, radar_server):
        radar_server.failing.add("radar_")
        orchestrator = make_pipeline(observed_max_attempts=1)

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()
            assert orchestrator.metrics.restarts_scheduled == 1
            assert orchestrator.error_message == ROUND_FAILED_MESSAGE
            assert all(record.has_failed for record in orchestrator.sequence.records)

            orchestrator.scheduler.advance(10)
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        assert orchestrator.metrics.rounds_started == 2
        assert orchestrator.metrics.restarts_scheduled == 2
        assert len(radar_server.requests) == 6


class TestForecasts:
    """Tests for the forecast follow-up pass."""

    def test_forecast_tail_follows_newest_observed(self, make_pipeline, radar_server):
        orchestrator = make_pipeline(
            options=PipelineOptions(
                image_count=2,
                forecast_enabled=True,
                forecast_horizon_minutes=30,
                forecast_interval_minutes=10,
            )
        )

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        view = orchestrator.sequence.loaded_view
        assert [record.kind for record in view] == [FrameKind.OBSERVED] * 2 + [FrameKind.FORECAST] * 3
        assert [record.timestamp for record in view[2:]] == [
            T_1200 + timedelta(minutes=10),
            T_1200 + timedelta(minutes=20),
            T_1200 + timedelta(minutes=30),
        ]
        assert orchestrator.metrics.forecast_passes == 1
        assert radar_server.calls_for("forecast") == 3
        assert orchestrator.active_forecast_source is None

    def test_no_forecasts_when_newest_failed(self, make_pipeline, radar_server):
        radar_server.failing.add("radar_20250915_1200_overlay")
        orchestrator = make_pipeline(
            options=PipelineOptions(
                image_count=2,
                forecast_enabled=True,
                forecast_horizon_minutes=20,
                forecast_interval_minutes=10,
            )
        )

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        assert radar_server.calls_for("forecast") == 0
        assert orchestrator.metrics.forecast_passes == 0
        assert [record.timestamp for record in orchestrator.sequence.loaded_view] == [T_1155]

    def test_forced_refresh_restarts_forecast_pass(self, make_pipeline, radar_server):
        radar_server.delays["fct20"] = 0.5
        orchestrator = make_pipeline(
            options=PipelineOptions(
                image_count=2,
                forecast_enabled=True,
                forecast_horizon_minutes=20,
                forecast_interval_minutes=10,
            )
        )
        fct10 = FrameKey.forecast(T_1200, 10)
        fct20 = FrameKey.forecast(T_1200, 20)

        async def scenario():
            orchestrator.refresh(force=True)
            await wait_until(lambda: orchestrator.sequence.get(fct10).has_succeeded)
            assert orchestrator.sequence.get(fct20).is_loading
            loaded = orchestrator.sequence.get(fct10)

            assert orchestrator.refresh(force=True)
            assert orchestrator.active_forecast_source == T_1200
            await orchestrator.wait_idle()
            return loaded

        loaded = asyncio.run(scenario())

        assert orchestrator.sequence.get(fct10) is loaded
        assert orchestrator.sequence.get(fct20).has_succeeded
        assert radar_server.calls_for("fct10") == 1
        assert radar_server.calls_for("fct20") == 2
        assert orchestrator.metrics.forecast_passes == 2
        assert orchestrator.active_forecast_source is None
        # Nothing from the cancelled pass was applied
        assert orchestrator.metrics.successes == 4
        assert orchestrator.metrics.failures == 0


class TestCancellation:
    """Tests for cancel_all."""

    def test_cancel_all_is_idempotent(self, make_pipeline, radar_server):
        radar_server.delay = 10
        orchestrator = make_pipeline()

        async def scenario():
            orchestrator.refresh(force=True)
            await asyncio.sleep(0.05)
            counts = (orchestrator.cancel_all(), orchestrator.cancel_all())
            await orchestrator.wait_idle()
            return counts

        assert asyncio.run(scenario()) == (3, 0)
        assert not orchestrator.is_loading
        assert all(record.state.phase is LoadingPhase.PENDING for record in orchestrator.sequence)
        assert orchestrator.metrics.failures == 0
        assert orchestrator.error_message is None
        assert orchestrator.scheduler.pending == 0


class TestInterval:
    """Tests for set_interval."""

    def test_invalid_interval(self, make_pipeline):
        orchestrator = make_pipeline()

        with pytest.raises(ValueError):
            orchestrator.set_interval(7)
        assert orchestrator.interval_minutes == 5

    def test_interval_change_restarts_round(self, make_pipeline, radar_server):
        orchestrator = make_pipeline()

        async def scenario():
            orchestrator.set_interval(10)
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        assert orchestrator.interval_minutes == 10
        assert [request.url.path for request in radar_server.requests] == [
            "/output/radar_20250915_1200_overlay2x.png",
            "/output/radar_20250915_1150_overlay2x.png",
            "/output/radar_20250915_1140_overlay2x.png",
        ]


class TestPeriodicUpdates:
    """Tests for the update check on radar grid boundaries."""

    def test_boundary_triggers_one_round(self, make_pipeline, radar_server):
        orchestrator = make_pipeline()

        async def scenario():
            orchestrator.start()
            await orchestrator.wait_idle()

            # 12:02:30 -> 12:05:20, inside the update window
            orchestrator.scheduler.advance(170)
            await orchestrator.wait_idle()
            assert radar_server.calls_for("radar_20250915_1205") == 1

            orchestrator.scheduler.advance(30)
            await orchestrator.wait_idle()
            orchestrator.stop()

        asyncio.run(scenario())

        assert orchestrator.metrics.rounds_started == 2
        assert orchestrator.sequence.current_timestamp == T_1205
        assert orchestrator.scheduler.pending == 0

    def test_boundary_round_cancels_slow_forecast_pass(self, make_pipeline, radar_server):
        radar_server.delays["forecast"] = 0.5
        orchestrator = make_pipeline(
            options=PipelineOptions(
                image_count=2,
                forecast_enabled=True,
                forecast_horizon_minutes=10,
                forecast_interval_minutes=10,
            )
        )

        async def scenario():
            orchestrator.start()
            await wait_until(lambda: orchestrator.active_forecast_source == T_1200)

            # Forecasts for 12:00 are still in flight at 12:05:20
            orchestrator.scheduler.advance(170)
            assert orchestrator.metrics.rounds_started == 2

            await orchestrator.wait_idle()
            orchestrator.stop()

        asyncio.run(scenario())

        assert radar_server.calls_for("radar_20250915_1205_overlay") == 1
        assert radar_server.calls_for("radar_20250915_1200_forecast") == 1
        assert orchestrator.sequence.get(FrameKey.forecast(T_1200, 10)) is None
        assert orchestrator.sequence.get(FrameKey.forecast(T_1205, 10)).has_succeeded
        assert [record.timestamp for record in orchestrator.sequence.loaded_view] == [
            T_1205,
            T_1200,
            T_1205 + timedelta(minutes=10),
        ]

    def test_cursor_stays_when_scrubbed_back(self, make_pipeline):
        orchestrator = make_pipeline()

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()
            orchestrator.select(1)
            assert orchestrator.sequence.current_timestamp == T_1155

            orchestrator.scheduler.advance(170)
            orchestrator.refresh()
            await orchestrator.wait_idle()

        asyncio.run(scenario())

        assert orchestrator.sequence.current_timestamp == T_1155
        assert orchestrator.sequence.current_index == 2
        assert orchestrator.sequence.loaded_view[0].timestamp == T_1205


class TestSnapshot:
    """Tests for the renderer snapshot."""

    def test_snapshot_after_round(self, make_pipeline):
        orchestrator = make_pipeline()

        async def scenario():
            orchestrator.refresh(force=True)
            await orchestrator.wait_idle()

        asyncio.run(scenario())
        snapshot = orchestrator.snapshot()

        assert snapshot.current_timestamp == T_1200
        assert snapshot.loaded_count == 3
        assert snapshot.total_count == 3
        assert not snapshot.is_loading
        assert [frame.key for frame in snapshot.frames] == [
            "20250915_1200",
            "20250915_1155",
            "20250915_1150",
        ]
        assert all(frame.image_source == "network" for frame in snapshot.frames)
