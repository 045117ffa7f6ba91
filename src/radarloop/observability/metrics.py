"""
Pipeline Metrics
================

Counters and load-time statistics of the acquisition pipeline.

Metrics are for observability ONLY: nothing in the pipeline reads them
to make a decision.
"""

import logging
from collections import deque
from typing import Deque, Optional

import numpy as np


logger = logging.getLogger(__name__)

LOAD_TIME_WINDOW = 200


class PipelineMetrics:
    """Metrics for PipelineOrchestrator observability."""

    __slots__ = (
        "rounds_started",
        "forecast_passes",
        "network_loads",
        "cache_hits",
        "successes",
        "failures",
        "cancellations",
        "stale_results",
        "retries_scheduled",
        "restarts_scheduled",
        "last_round_duration",
        "_load_times",
    )

    def __init__(self, window: int = LOAD_TIME_WINDOW) -> None:
        self.rounds_started: int = 0
        self.forecast_passes: int = 0
        self.network_loads: int = 0
        self.cache_hits: int = 0
        self.successes: int = 0
        self.failures: int = 0
        self.cancellations: int = 0
        self.stale_results: int = 0
        self.retries_scheduled: int = 0
        self.restarts_scheduled: int = 0
        self.last_round_duration: Optional[float] = None
        self._load_times: Deque[float] = deque(maxlen=window)

    def record_load_time(self, seconds: float) -> None:
        """Track the duration of a network load."""
        self._load_times.append(seconds)

    def load_time_stats(self) -> dict:
        """Mean and percentiles (seconds) of recent network load times."""
        if not self._load_times:
            return {"count": 0, "mean": None, "p50": None, "p95": None, "max": None}

        samples = np.fromiter(self._load_times, dtype=np.float64)
        p50, p95 = np.percentile(samples, [50, 95])
        return {
            "count": int(samples.size),
            "mean": round(float(samples.mean()), 4),
            "p50": round(float(p50), 4),
            "p95": round(float(p95), 4),
            "max": round(float(samples.max()), 4),
        }

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "rounds_started": self.rounds_started,
            "forecast_passes": self.forecast_passes,
            "network_loads": self.network_loads,
            "cache_hits": self.cache_hits,
            "successes": self.successes,
            "failures": self.failures,
            "cancellations": self.cancellations,
            "stale_results": self.stale_results,
            "retries_scheduled": self.retries_scheduled,
            "restarts_scheduled": self.restarts_scheduled,
            "last_round_duration": self.last_round_duration,
            "load_time": self.load_time_stats(),
        }
