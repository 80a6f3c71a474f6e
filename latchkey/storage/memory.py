from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from latchkey.logging import get_logger
from latchkey.storage.base import NOT_FOUND, BaseStore, validate_ttl
from latchkey.storage.models import CacheEntry

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60
# Keys examined per lock acquisition during a sweep
SWEEP_BATCH_SIZE = 500


class MemoryStore(BaseStore):
    """Process-local store with TTL expiry.

    Expiry is checked on every read, so an expired entry is never returned
    even before the sweep reaches it. :meth:`open` starts a periodic sweep
    task that reclaims expired entries in small batches. Between batches it
    releases the lock and yields to the event loop, so request-path
    operations wait for at most one batch.
    """

    def __init__(
        self,
        *,
        prefix: Optional[str] = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(prefix=prefix)
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        # One lock over the dict; every critical section is O(1)
        self._lock = threading.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get(self, key: str) -> Any:
        full_key = self._key(key)
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return NOT_FOUND
            if entry.is_expired(self._clock()):
                del self._entries[full_key]
                return NOT_FOUND
            return entry.value

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = validate_ttl(ttl)
        full_key = self._key(key)
        with self._lock:
            self._entries[full_key] = CacheEntry(
                key=full_key, value=value, inserted_at=self._clock(), ttl=ttl
            )

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(self._key(key), None)

    async def take(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.pop(self._key(key), None)
        if entry is None or entry.is_expired(self._clock()):
            return NOT_FOUND
        return entry.value

    async def sweep(self) -> int:
        """Remove expired entries; returns how many were reclaimed.

        Yields to the event loop after every batch so foreground operations
        interleave with a long scan.
        """
        with self._lock:
            keys: List[str] = list(self._entries.keys())
        removed = 0
        for start in range(0, len(keys), SWEEP_BATCH_SIZE):
            batch = keys[start:start + SWEEP_BATCH_SIZE]
            now = self._clock()
            with self._lock:
                for key in batch:
                    entry = self._entries.get(key)
                    if entry is not None and entry.is_expired(now):
                        del self._entries[key]
                        removed += 1
            await asyncio.sleep(0)
        if removed:
            logger.debug("store_sweep_completed", removed=removed, scanned=len(keys))
        return removed

    async def open(self) -> None:
        """Start the background sweep task."""
        if self._running:
            logger.warning("memory_store_already_open")
            return
        self._running = True
        if self.sweep_interval and self.sweep_interval > 0:
            self._task = asyncio.create_task(self._run_sweeper())
        logger.info("memory_store_opened", sweep_interval=self.sweep_interval)

    async def close(self) -> None:
        """Stop the sweep task; stored entries are kept."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("memory_store_closed")

    async def _run_sweeper(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.error(
                    "store_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )


__all__ = ["MemoryStore"]
