"""
Fetch Client Tests
==================

Tests for cache-first fetching, deduplication, error values and
cancellation, against a fake radar server on httpx.MockTransport.
"""

import asyncio
from contextlib import aclosing
from datetime import datetime, timezone

from radarloop.fetch import FetchClient, LoadingStrategy, RadarUrlBuilder
from radarloop.models.errors import (
    ErrorCode,
    ImageDecodeError,
    InvalidTargetError,
    TransportError,
)
from radarloop.models.frame_key import FrameKey


T_1200 = datetime(2025, 9, 15, 12, 0, tzinfo=timezone.utc)
T_1155 = datetime(2025, 9, 15, 11, 55, tzinfo=timezone.utc)
T_1150 = datetime(2025, 9, 15, 11, 50, tzinfo=timezone.utc)


async def collect(client: FetchClient, keys, strategy):
    async with aclosing(client.fetch_many(keys, strategy)) as results:
        return [result async for result in results]


class TestFetch:
    """Tests for single-frame fetches."""

    def test_network_success(self, make_client, radar_server, png_bytes):
        client = make_client()

        result = asyncio.run(client.fetch(FrameKey.observed(T_1200)))

        assert result.ok
        assert result.data == png_bytes
        assert not result.from_cache
        assert radar_server.calls_for("radar_20250915_1200_overlay2x.png") == 1

    def test_forecast_url(self, make_client, radar_server):
        client = make_client()

        asyncio.run(client.fetch(FrameKey.forecast(T_1200, 30)))

        url = str(radar_server.requests[0].url)
        assert "/output_forecast/radar_20250915_1200_forecast_fct30_overlay2x.png" in url

    def test_success_is_written_to_cache(self, make_client, cache_store, png_bytes):
        client = make_client(cache=cache_store)
        key = FrameKey.observed(T_1200)

        async def scenario():
            await client.fetch(key)
            return await cache_store.get(key.cache_key)

        assert asyncio.run(scenario()) == png_bytes

    def test_cache_first(self, make_client, cache_store, radar_server, png_bytes):
        client = make_client(cache=cache_store)
        key = FrameKey.observed(T_1155)

        async def scenario():
            await cache_store.put(key.cache_key, png_bytes)
            return await client.fetch(key)

        result = asyncio.run(scenario())

        assert result.from_cache
        assert result.load_time == 0.0
        assert result.data == png_bytes
        assert radar_server.requests == []
        assert client.metrics.cache_hits == 1

    def test_http_error_is_transport_error(self, make_client, radar_server):
        radar_server.failing.add("radar_20250915_1200")
        client = make_client()

        result = asyncio.run(client.fetch(FrameKey.observed(T_1200)))

        assert not result.ok
        assert isinstance(result.error, TransportError)
        assert result.error.status_code == 500
        assert result.error.retryable
        assert client.metrics.failures == 1

    def test_garbage_payload_is_decode_error(self, make_client, radar_server, cache_store):
        radar_server.payload = b"<html>not an image</html>"
        client = make_client(cache=cache_store)
        key = FrameKey.observed(T_1200)

        async def scenario():
            result = await client.fetch(key)
            return result, await cache_store.contains(key.cache_key)

        result, cached = asyncio.run(scenario())

        assert isinstance(result.error, ImageDecodeError)
        assert result.error.code is ErrorCode.DECODE
        assert not cached

    def test_invalid_target_fails_fast(self, make_client, radar_server):
        client = make_client(urls=RadarUrlBuilder(base_url="ftp://example.com/output"))

        result = asyncio.run(client.fetch(FrameKey.observed(T_1200)))

        assert isinstance(result.error, InvalidTargetError)
        assert not result.error.retryable
        assert radar_server.requests == []

    def test_priority_header(self, make_client, radar_server):
        client = make_client()

        async def scenario():
            await client.fetch(FrameKey.observed(T_1200))
            await client.fetch(FrameKey.observed(T_1150))

        asyncio.run(scenario())

        assert [request.headers["Priority"] for request in radar_server.requests] == ["u=0", "u=3"]


class TestDeduplication:
    """Tests for sharing one network operation per key."""

    def test_concurrent_fetches_share_one_request(self, make_client, radar_server):
        radar_server.delay = 0.05
        client = make_client()
        key = FrameKey.observed(T_1200)

        async def scenario():
            return await asyncio.gather(client.fetch(key), client.fetch(key))

        first, second = asyncio.run(scenario())

        assert first.ok and second.ok
        assert len(radar_server.requests) == 1
        assert client.metrics.deduplicated == 1
        assert client.in_flight_count == 0

    def test_sequential_fetches_without_cache_hit_network_twice(self, make_client, radar_server):
        client = make_client()
        key = FrameKey.observed(T_1200)

        async def scenario():
            await client.fetch(key)
            await client.fetch(key)

        asyncio.run(scenario())

        assert len(radar_server.requests) == 2


class TestFetchMany:
    """Tests for multi-frame streaming."""

    def test_sequential_order(self, make_client, radar_server):
        client = make_client()
        keys = [FrameKey.observed(T_1200), FrameKey.observed(T_1155), FrameKey.observed(T_1150)]

        results = asyncio.run(collect(client, keys, LoadingStrategy.sequential()))

        assert [result.key for result in results] == keys
        paths = [request.url.path for request in radar_server.requests]
        assert paths == [
            "/output/radar_20250915_1200_overlay2x.png",
            "/output/radar_20250915_1155_overlay2x.png",
            "/output/radar_20250915_1150_overlay2x.png",
        ]

    def test_one_result_per_key_even_on_failure(self, make_client, radar_server):
        radar_server.failing.add("radar_20250915_1155")
        client = make_client()
        keys = [FrameKey.observed(T_1200), FrameKey.observed(T_1155), FrameKey.observed(T_1200)]

        results = asyncio.run(collect(client, keys, LoadingStrategy.parallel(3)))

        by_key = {result.key: result for result in results}
        assert len(results) == 2
        assert by_key[FrameKey.observed(T_1200)].ok
        assert isinstance(by_key[FrameKey.observed(T_1155)].error, TransportError)

    def test_empty_keys(self, make_client):
        client = make_client()

        assert asyncio.run(collect(client, [], LoadingStrategy.sequential())) == []


class TestCancellation:
    """Tests for cancel and cancel_all."""

    def test_cancel_all_reports_cancelled_result(self, make_client, radar_server):
        radar_server.delay = 10
        client = make_client()
        key = FrameKey.observed(T_1200)

        async def scenario():
            task = asyncio.create_task(client.fetch(key))
            await asyncio.sleep(0.05)
            cancelled = client.cancel_all()
            return cancelled, await task

        cancelled, result = asyncio.run(scenario())

        assert cancelled == 1
        assert result.cancelled
        assert result.error.code is ErrorCode.CANCELLED
        assert client.in_flight_count == 0

    def test_cancel_all_is_idempotent(self, make_client, radar_server):
        radar_server.delay = 10
        client = make_client()

        async def scenario():
            task = asyncio.create_task(client.fetch(FrameKey.observed(T_1200)))
            await asyncio.sleep(0.05)
            counts = (client.cancel_all(), client.cancel_all())
            await task
            return counts

        assert asyncio.run(scenario()) == (1, 0)

    def test_cancel_all_drops_queued_requests(self, make_client, radar_server):
        radar_server.delay = 10
        client = make_client()
        keys = [FrameKey.observed(T_1200), FrameKey.observed(T_1155), FrameKey.observed(T_1150)]

        async def scenario():
            collector = asyncio.create_task(collect(client, keys, LoadingStrategy.sequential()))
            await asyncio.sleep(0.05)
            client.cancel_all()
            return await collector

        results = asyncio.run(scenario())

        assert len(results) == 3
        assert all(result.cancelled for result in results)
        assert len(radar_server.requests) == 1

    def test_cancel_single_key(self, make_client, radar_server):
        radar_server.delay = 10
        client = make_client()
        key = FrameKey.observed(T_1200)

        async def scenario():
            task = asyncio.create_task(client.fetch(key))
            await asyncio.sleep(0.05)
            return client.cancel(key), client.cancel(key), await task

        first, second, result = asyncio.run(scenario())

        assert first is True
        assert second is False
        assert result.cancelled
