"""
Fetch Client
============

Deduplicating, prioritized, cancellable HTTP fetch layer for radar frames.

This client:
    - Serves frames from the Cache Store when possible (cache-first)
    - Shares one network operation between concurrent callers of the same key
    - Streams multi-frame results in completion order
    - Annotates requests with a priority derived from kind and age
    - Writes successful payloads back to the Cache Store
    - Converts every failure into a FetchResult (errors are values)

Example:
    client = FetchClient(RadarUrlBuilder(), cache=store)

    result = await client.fetch(FrameKey.observed(timestamp))

    async with aclosing(client.fetch_many(keys, LoadingStrategy.sequential())) as results:
        async for result in results:
            apply(result)

Design Rules:
    - The in-flight map is the only shared mutable structure; every insert
      and remove happens under its mutex
    - An in-flight entry is removed exactly once: on completion, or by
      cancel_all (the completion callback then finds nothing to remove)
    - Cancellation of the shared operation is reported as a
      FetchCancelledError result; cancellation of the CALLER propagates
"""

import asyncio
import logging
import threading
import time
from datetime import datetime
from functools import partial
from typing import AsyncIterator, Callable, Dict, Iterable, Optional

import httpx

from radarloop.cache.store import CacheStore
from radarloop.fetch.result import FetchResult, LoadingStrategy, determine_priority
from radarloop.fetch.urls import RadarUrlBuilder
from radarloop.image_decoder import validate_image
from radarloop.models.errors import (
    FetchCancelledError,
    FrameFetchError,
    ImageDecodeError,
    InvalidTargetError,
    TransportError,
)
from radarloop.models.frame_key import FrameKey
from radarloop.timeline.radar_time import utc_now


logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 25.0


class FetchClientMetrics:
    """Metrics for FetchClient observability."""

    __slots__ = (
        "network_requests",
        "deduplicated",
        "cache_hits",
        "cache_write_failures",
        "failures",
        "cancellations",
    )

    def __init__(self) -> None:
        self.network_requests: int = 0
        self.deduplicated: int = 0
        self.cache_hits: int = 0
        self.cache_write_failures: int = 0
        self.failures: int = 0
        self.cancellations: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "network_requests": self.network_requests,
            "deduplicated": self.deduplicated,
            "cache_hits": self.cache_hits,
            "cache_write_failures": self.cache_write_failures,
            "failures": self.failures,
            "cancellations": self.cancellations,
        }


class FetchClient:
    """
    Radar frame fetcher with cache integration and request deduplication.

    Attributes:
        urls: URL builder for frame keys
        cache: Optional Cache Store consulted before the network
        metrics: Operational metrics
    """

    def __init__(
        self,
        urls: RadarUrlBuilder,
        cache: Optional[CacheStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize fetch client.

        Args:
            urls: Builds the request URL of each frame key
            cache: Cache Store, or None to always use the network
            http_client: Shared httpx client (one is created if None)
            timeout: Per-request timeout in seconds for the created client
            clock: Current time, used for request priority
        """
        self.urls = urls
        self.cache = cache
        self.metrics = FetchClientMetrics()

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            headers={"User-Agent": "radarloop/0.1"},
        )
        self._clock = clock

        self._in_flight: Dict[FrameKey, asyncio.Task] = {}
        self._lock = threading.Lock()
        self._generation: int = 0

    @property
    def in_flight_count(self) -> int:
        """Number of network operations currently running."""
        with self._lock:
            return len(self._in_flight)

    def is_in_flight(self, key: FrameKey) -> bool:
        with self._lock:
            return key in self._in_flight

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch(self, key: FrameKey) -> FetchResult:
        """
        Fetch one frame.

        Returns:
            FetchResult; failures are reported in result.error
        """
        cached = await self._cached(key)
        if cached is not None:
            self.metrics.cache_hits += 1
            logger.debug(f"Cache hit for key: {key.cache_key}")
            return FetchResult(key, data=cached, load_time=0.0, from_cache=True)

        try:
            url = self.urls.request_url(key)
        except InvalidTargetError as e:
            self.metrics.failures += 1
            logger.error(f"Invalid radar URL for {key}: {e}")
            return FetchResult(key, error=e)

        with self._lock:
            operation = self._in_flight.get(key)
            if operation is None:
                operation = asyncio.create_task(
                    self._perform(key, url),
                    name=f"radar-fetch:{key.cache_key}",
                )
                self._in_flight[key] = operation
                operation.add_done_callback(partial(self._release, key))
                self.metrics.network_requests += 1
            else:
                self.metrics.deduplicated += 1
                logger.debug(f"Joining in-flight request for {key}")

        return await self._join(key, operation)

    async def fetch_many(
        self,
        keys: Iterable[FrameKey],
        strategy: LoadingStrategy = LoadingStrategy.sequential(),
    ) -> AsyncIterator[FetchResult]:
        """
        Fetch several frames, yielding one result per key as each completes.

        Sequential strategy starts requests in the given order, one at a
        time. Parallel strategy starts the most urgent requests first.
        Requests that had not started when cancel_all() was called yield
        a FetchCancelledError result without touching the network.

        Args:
            keys: Frames to fetch (duplicates are collapsed)
            strategy: Concurrency limit

        Yields:
            FetchResult in completion order
        """
        ordered = list(dict.fromkeys(keys))
        if not ordered:
            return

        if not strategy.is_sequential:
            now = self._clock()
            ordered.sort(key=lambda key: determine_priority(key, now))

        generation = self._generation
        semaphore = asyncio.Semaphore(strategy.max_concurrent)

        async def _worker(key: FrameKey) -> FetchResult:
            async with semaphore:
                if generation != self._generation:
                    return FetchResult(key, error=FetchCancelledError(f"Cancelled before start: {key}"))
                return await self.fetch(key)

        workers = [
            asyncio.create_task(_worker(key), name=f"radar-fetch-worker:{key.cache_key}")
            for key in ordered
        ]
        try:
            for next_done in asyncio.as_completed(workers):
                yield await next_done
        finally:
            pending = [worker for worker in workers if not worker.done()]
            for worker in pending:
                worker.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, key: FrameKey) -> bool:
        """Cancel the in-flight operation for key. Returns True if one existed."""
        with self._lock:
            operation = self._in_flight.pop(key, None)
        if operation is None:
            return False
        operation.cancel()
        logger.info(f"Cancelled radar request for {key}")
        return True

    def cancel_all(self) -> int:
        """
        Cancel every in-flight operation and every queued fetch_many request.

        Safe to call repeatedly. Returns the number of operations cancelled.
        """
        with self._lock:
            operations = list(self._in_flight.values())
            self._in_flight.clear()
            self._generation += 1

        for operation in operations:
            operation.cancel()

        if operations:
            logger.info(f"Cancelled {len(operations)} radar requests")
        return len(operations)

    async def aclose(self) -> None:
        """Cancel everything and close the owned HTTP client."""
        self.cancel_all()
        if self._owns_http:
            await self._http.aclose()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _cached(self, key: FrameKey) -> Optional[bytes]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key.cache_key)
        except (OSError, RuntimeError) as e:
            logger.warning(f"Cache lookup failed for {key.cache_key}: {e}")
            return None

    async def _join(self, key: FrameKey, operation: asyncio.Task) -> FetchResult:
        started = time.monotonic()
        try:
            return await asyncio.shield(operation)
        except asyncio.CancelledError:
            caller = asyncio.current_task()
            if operation.cancelled() and (caller is None or caller.cancelling() == 0):
                self.metrics.cancellations += 1
                return FetchResult(
                    key,
                    error=FetchCancelledError(f"Request cancelled: {key}"),
                    load_time=time.monotonic() - started,
                )
            raise

    def _release(self, key: FrameKey, operation: asyncio.Task) -> None:
        with self._lock:
            if self._in_flight.get(key) is operation:
                del self._in_flight[key]

    async def _perform(self, key: FrameKey, url: httpx.URL) -> FetchResult:
        started = time.monotonic()
        priority = determine_priority(key, self._clock())
        logger.info(f"Network fetch started for {key} (priority={priority.name})")

        try:
            response = await self._http.get(url, headers={"Priority": priority.header_value})
            response.raise_for_status()
            data = validate_image(response.content)
        except httpx.TimeoutException as e:
            return self._failure(key, url, TransportError(f"Request timed out: {e!r}"), started)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            return self._failure(key, url, TransportError(f"HTTP {status}", status_code=status), started)
        except httpx.InvalidURL as e:
            return self._failure(key, url, InvalidTargetError(str(e)), started)
        except httpx.HTTPError as e:
            return self._failure(key, url, TransportError(f"Transport error: {e!r}"), started)
        except ImageDecodeError as e:
            return self._failure(key, url, e, started)

        logger.info(f"Network fetch completed for {key} ({len(data)} bytes)")
        await self._store(key, data)

        return FetchResult(key, data=data, load_time=time.monotonic() - started)

    async def _store(self, key: FrameKey, data: bytes) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.put(key.cache_key, data)
        except (OSError, RuntimeError) as e:
            self.metrics.cache_write_failures += 1
            logger.warning(f"Failed to cache image for key {key.cache_key}: {e}")

    def _failure(
        self,
        key: FrameKey,
        url: httpx.URL,
        error: FrameFetchError,
        started: float,
    ) -> FetchResult:
        self.metrics.failures += 1
        logger.error(f"Radar request failed for URL: {url}, {key}, error: {error}")
        return FetchResult(key, error=error, load_time=time.monotonic() - started)
