"""
Cache Module
============

Persistent on-disk cache for radar image payloads.

Example:
    from radarloop.cache import CacheStore

    store = CacheStore(Path("./data/image_cache"))
    data = await store.get("20250915_1205")
"""

from radarloop.cache.store import CacheStore


__all__ = [
    "CacheStore",
]
