"""
Observability Module
====================

Counters and statistics for the radar pipeline.

DESIGN RULES:
    - Does NOT influence fetch or retry decisions
    - Exported as plain dicts for the /metrics endpoint
"""

from radarloop.observability.metrics import PipelineMetrics


__all__ = [
    "PipelineMetrics",
]
