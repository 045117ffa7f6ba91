"""
Radarloop
=========

Radar frame acquisition and sequencing pipeline.

This package decides which timestamped radar frames are needed, fetches
them with deduplication, priority and bounded retry, keeps a persistent
image cache, and maintains the ordered Loaded View that renderers scrub
and animate.

Components:
    - timeline: Radar grid time helpers
    - models: Frame keys, loading states, errors, renderer snapshot
    - cache: On-disk image cache
    - fetch: Deduplicating HTTP fetch client
    - sequence: Frame records and the Loaded View
    - pipeline: Orchestrator, scheduler and animation driver

Example:
    from radarloop.config import settings
    from radarloop.main import create_orchestrator

    orchestrator = create_orchestrator(settings)
    orchestrator.start()
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
