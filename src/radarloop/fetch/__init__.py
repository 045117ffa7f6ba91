"""
Fetch Module
============

HTTP acquisition layer for radar frames.

This module provides:
    - FetchClient: cache-first, deduplicating, cancellable fetcher
    - FetchResult: per-frame outcome (bytes or error)
    - LoadingStrategy: sequential or bounded-parallel fan-out
    - RequestPriority: advisory urgency derived from kind and age
    - RadarUrlBuilder / ImageQuality: image server URL templates

Example:
    from radarloop.fetch import FetchClient, LoadingStrategy, RadarUrlBuilder

    client = FetchClient(RadarUrlBuilder(), cache=store)
    async for result in client.fetch_many(keys, LoadingStrategy.sequential()):
        print(result.key, result.ok)
"""

from radarloop.fetch.client import FetchClient, FetchClientMetrics
from radarloop.fetch.result import (
    FetchResult,
    LoadingStrategy,
    RequestPriority,
    determine_priority,
)
from radarloop.fetch.urls import ImageQuality, RadarUrlBuilder


__all__ = [
    "FetchClient",
    "FetchClientMetrics",
    "FetchResult",
    "LoadingStrategy",
    "RequestPriority",
    "determine_priority",
    "ImageQuality",
    "RadarUrlBuilder",
]
