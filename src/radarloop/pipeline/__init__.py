"""
Pipeline Module
===============

Control flow of the radar frame pipeline.

Components:
    - Scheduler / AsyncioScheduler / ManualScheduler: clock and timers
    - PipelineOrchestrator: rounds, retries, forecast follow-up,
      periodic trigger and animation driver

Example:
    orchestrator = PipelineOrchestrator(sequence, client, AsyncioScheduler())
    orchestrator.start()
"""

from radarloop.pipeline.orchestrator import (
    ALLOWED_INTERVALS,
    PassOutcome,
    PipelineOptions,
    PipelineOrchestrator,
)
from radarloop.pipeline.scheduler import (
    AsyncioScheduler,
    ManualScheduler,
    ManualTimer,
    Scheduler,
    TimerHandle,
)


__all__ = [
    "ALLOWED_INTERVALS",
    "AsyncioScheduler",
    "ManualScheduler",
    "ManualTimer",
    "PassOutcome",
    "PipelineOptions",
    "PipelineOrchestrator",
    "Scheduler",
    "TimerHandle",
]
