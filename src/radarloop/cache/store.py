"""
Image Cache Store
=================

On-disk store for radar image payloads, one PNG file per frame key.

This store:
    - Maps a cache key ("20250915_1205", "20250915_1205-20250915_1235")
      to <directory>/<key>.png
    - Treats expired entries (mtime older than max_age) as misses and
      deletes them on lookup
    - Treats payloads that fail to decode as misses and deletes them
    - At construction, deletes all expired entries, then evicts the oldest
      files (by mtime) until the total size fits max_size_bytes

Concurrency:
    Every file operation runs on a private single-thread executor, so
    operations are serialized in submission order (maintenance first) and
    the event loop never blocks on disk I/O.

Example:
    store = CacheStore(Path("./data/image_cache"))

    await store.put("20250915_1205", png_bytes)
    data = await store.get("20250915_1205")
"""

import asyncio
import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional, Tuple, TypeVar

from radarloop.image_decoder import validate_image
from radarloop.models.errors import ImageDecodeError


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_SIZE_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_AGE = timedelta(days=7)
CACHE_SUFFIX = ".png"


class CacheStore:
    """
    Size- and age-bounded file cache for decoded radar images.

    Attributes:
        directory: Flat directory holding one file per key
        max_size_bytes: Size budget enforced by maintenance
        max_age: Entries older than this are expired
    """

    def __init__(
        self,
        directory: Path,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the store and schedule background maintenance.

        Args:
            directory: Cache directory (created if missing)
            max_size_bytes: Maximum total size after maintenance
            max_age: Maximum entry age
            clock: Wall clock in epoch seconds (compared with file mtimes)
        """
        if max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be positive")
        if max_age.total_seconds() <= 0:
            raise ValueError("max_age must be positive")

        self.directory = Path(directory)
        self.max_size_bytes = max_size_bytes
        self.max_age = max_age
        self._clock = clock

        self.directory.mkdir(parents=True, exist_ok=True)

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="radar-cache")
        self._closed = False
        self.maintenance: Future = self._executor.submit(self._maintain)

        logger.info(
            f"CacheStore initialized: dir={self.directory}, "
            f"max_size={self.max_size_bytes} bytes, max_age={self.max_age}"
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def get(self, key: str) -> Optional[bytes]:
        """Cached bytes for key, or None when missing, expired or corrupt."""
        return await self._run(self._get, key)

    async def put(self, key: str, data: bytes) -> None:
        """
        Store bytes under key, replacing any previous entry.

        Raises:
            OSError: If the file cannot be written
        """
        await self._run(self._put, key, data)

    async def remove(self, key: str) -> bool:
        """Delete the entry. Returns True if a file was removed."""
        return await self._run(self._remove, key)

    async def contains(self, key: str) -> bool:
        """Whether a non-expired entry exists (payload not validated)."""
        return await self._run(self._contains, key)

    async def size_bytes(self) -> int:
        """Total size of all cache files."""
        return await self._run(self._size_bytes)

    async def clear(self) -> int:
        """Delete every entry. Returns the number of files removed."""
        return await self._run(self._clear)

    async def maintain(self) -> Tuple[int, int]:
        """Run maintenance now. Returns (expired_removed, evicted)."""
        return await self._run(self._maintain)

    def path_for(self, key: str) -> Path:
        """File path backing key."""
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.directory / f"{key}{CACHE_SUFFIX}"

    def close(self) -> None:
        """Finish queued operations and stop the executor."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        logger.info("CacheStore closed")

    async def aclose(self) -> None:
        """close() without blocking the event loop on queued writes."""
        await asyncio.to_thread(self.close)

    # =========================================================================
    # Executor-side operations
    # =========================================================================

    async def _run(self, fn: Callable[..., T], *args) -> T:
        if self._closed:
            raise RuntimeError("CacheStore is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args))

    def _get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None

        if self._is_expired(path):
            logger.debug(f"Cache entry expired: {key}")
            self._unlink(path)
            return None

        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Failed to read cache entry {key}: {e}")
            return None

        try:
            validate_image(data)
        except ImageDecodeError as e:
            logger.warning(f"Removing corrupted cache entry {key}: {e}")
            self._unlink(path)
            return None

        return data

    def _put(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                self._unlink(tmp_path)
        logger.debug(f"Cached {len(data)} bytes for key: {key}")

    def _remove(self, key: str) -> bool:
        return self._unlink(self.path_for(key))

    def _contains(self, key: str) -> bool:
        path = self.path_for(key)
        return path.exists() and not self._is_expired(path)

    def _size_bytes(self) -> int:
        total = 0
        for path in self._entries():
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    def _clear(self) -> int:
        removed = sum(1 for path in self._entries() if self._unlink(path))
        logger.info(f"Cleared {removed} cached images")
        return removed

    def _maintain(self) -> Tuple[int, int]:
        expired = 0
        for path in self._entries():
            if self._is_expired(path) and self._unlink(path):
                expired += 1

        evicted = self._enforce_max_size()

        if expired or evicted:
            logger.info(
                f"Cache maintenance: removed {expired} expired, "
                f"evicted {evicted} to fit {self.max_size_bytes} bytes"
            )
        return expired, evicted

    def _enforce_max_size(self) -> int:
        entries: List[Tuple[float, int, Path]] = []
        for path in self._entries():
            try:
                stat = path.stat()
            except OSError:
                continue
            entries.append((stat.st_mtime, stat.st_size, path))

        total = sum(size for _, size, _ in entries)
        if total <= self.max_size_bytes:
            return 0

        evicted = 0
        for _, size, path in sorted(entries, key=lambda entry: entry[0]):
            if total <= self.max_size_bytes:
                break
            if self._unlink(path):
                total -= size
                evicted += 1
                logger.debug(f"Evicted cache file to free space: {path.name}")
        return evicted

    def _entries(self) -> List[Path]:
        try:
            return [path for path in self.directory.glob(f"*{CACHE_SUFFIX}") if path.is_file()]
        except OSError as e:
            logger.error(f"Failed to list cache directory {self.directory}: {e}")
            return []

    def _is_expired(self, path: Path) -> bool:
        try:
            modified = path.stat().st_mtime
        except OSError:
            return True
        return self._clock() - modified > self.max_age.total_seconds()

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete cache file {path.name}: {e}")
            return False
