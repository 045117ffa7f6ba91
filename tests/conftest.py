"""
Test Configuration
==================

Pytest fixtures and test configuration for radarloop.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

import cv2
import httpx
import numpy as np
import pytest

from radarloop.cache import CacheStore
from radarloop.fetch import FetchClient, RadarUrlBuilder
from radarloop.pipeline import ManualScheduler, PipelineOptions, PipelineOrchestrator
from radarloop.sequence import FrameRecord, FrameSequence


# 12:02:30 UTC: the newest radar grid time is 12:00
NOW = datetime(2025, 9, 15, 12, 2, 30, tzinfo=timezone.utc)


def make_png(width: int = 8, height: int = 8, value: int = 0) -> bytes:
    """Encode an RGBA PNG like the radar overlays."""
    image = np.full((height, width, 4), value, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


class FakeRadarServer:
    """Radar server behind httpx.MockTransport."""

    def __init__(self, payload: bytes) -> None:
        self.payload = payload
        self.requests: List[httpx.Request] = []
        self.failing: Set[str] = set()
        self.fail_forecasts = False
        self.delay = 0.0
        # path token -> seconds, on top of delay
        self.delays: Dict[str, float] = {}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        delay = self.delay + sum(seconds for token, seconds in self.delays.items() if token in path)
        if delay:
            await asyncio.sleep(delay)

        if self.fail_forecasts and "forecast" in path:
            return httpx.Response(500)
        if any(token in path for token in self.failing):
            return httpx.Response(500)
        return httpx.Response(200, content=self.payload, headers={"Content-Type": "image/png"})

    def calls_for(self, token: str) -> int:
        return sum(1 for request in self.requests if token in request.url.path)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll predicate on the running loop until it holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def radar_server(png_bytes) -> FakeRadarServer:
    return FakeRadarServer(png_bytes)


@pytest.fixture
def cache_store(tmp_path):
    """Cache Store in a temporary directory."""
    store = CacheStore(tmp_path / "image_cache")
    store.maintenance.result(timeout=5)
    yield store
    store.close()


@pytest.fixture
def make_client(radar_server) -> Callable[..., FetchClient]:
    """Factory for Fetch Clients talking to the fake radar server."""

    def _make(
        cache: Optional[CacheStore] = None,
        urls: Optional[RadarUrlBuilder] = None,
    ) -> FetchClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(radar_server.handler))
        return FetchClient(urls or RadarUrlBuilder(), cache=cache, http_client=http, clock=lambda: NOW)

    return _make


@pytest.fixture
def make_pipeline(make_client) -> Callable[..., PipelineOrchestrator]:
    """Factory for orchestrators on a ManualScheduler starting at NOW."""

    def _make(
        options: Optional[PipelineOptions] = None,
        cache: Optional[CacheStore] = None,
        observed_max_attempts: int = 5,
        forecast_max_attempts: int = 10,
    ) -> PipelineOrchestrator:
        sequence = FrameSequence(
            observed_max_attempts=observed_max_attempts,
            forecast_max_attempts=forecast_max_attempts,
        )
        return PipelineOrchestrator(
            sequence,
            make_client(cache=cache),
            ManualScheduler(NOW),
            options=options or PipelineOptions(image_count=3, forecast_enabled=False),
        )

    return _make


@pytest.fixture
def load_frame(png_bytes) -> Callable[[FrameSequence, FrameRecord], None]:
    """Drive a record through PENDING -> LOADING -> SUCCESS."""

    def _load(sequence: FrameSequence, record: FrameRecord, data: Optional[bytes] = None) -> None:
        assert sequence.mark_loading(record, NOW)
        assert sequence.update_image(record, data or png_bytes, now=NOW + timedelta(seconds=1))

    return _load
