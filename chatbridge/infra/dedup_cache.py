# chatbridge/infra/dedup_cache.py
"""
In-memory deduplication cache for inbound chat-platform deliveries.

The live-chat platform can deliver the same message more than once
(retries, duplicate webhook triggers).  Each delivery is keyed by
``(message_id, sender_id)``; a key seen again within the cooldown window
is rejected.  Entries older than the cache TTL are removed by
``DedupSweeper``, which runs on its own timer, never on the request path.

⚠️ NOT horizontally scalable and not durable: each process holds its own
map, and a restart forgets every key.
"""
from __future__ import annotations

import asyncio
import time
from threading import Lock
from typing import Callable

from chatbridge.infra.logging_config import get_logger
from chatbridge.infra.metrics import inc_counter

logger = get_logger(__name__)


def make_dedup_key(message_id: str, sender_id: str) -> str:
    return f"{message_id}_{sender_id}"


class DedupCache:
    """
    Shared, lock-guarded map of ``key -> first-processing timestamp``.

    ``check_and_mark`` is the only request-path operation; the check and
    the write happen under the same lock so two near-simultaneous
    deliveries cannot both pass.
    """

    def __init__(
        self,
        cooldown_seconds: float = 2.0,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = Lock()

    def check_and_mark(self, key: str) -> bool:
        """
        Returns:
            True if processing may proceed (key recorded),
            False if the key was accepted less than ``cooldown_seconds`` ago.
        """
        now = self._clock()

        with self._lock:
            last_processed = self._entries.get(key)
            if last_processed is not None and now - last_processed < self.cooldown_seconds:
                remaining_ms = (self.cooldown_seconds - (now - last_processed)) * 1000
                logger.info(
                    f"Duplicate delivery skipped: key={key[:12]}..., "
                    f"cooldown_remaining={remaining_ms:.0f}ms"
                )
                return False

            self._entries[key] = now
            return True

    def sweep(self, ttl_seconds: float | None = None) -> int:
        """
        Remove entries older than ``ttl_seconds`` (defaults to the cache TTL).
        Returns number of keys removed.
        """
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        cutoff = self._clock() - ttl

        with self._lock:
            to_remove = [key for key, ts in self._entries.items() if ts < cutoff]
            for key in to_remove:
                del self._entries[key]

        if to_remove:
            logger.info(f"Dedup cache sweep: removed {len(to_remove)} keys")
            inc_counter("dedup_keys_evicted", len(to_remove))

        return len(to_remove)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


class DedupSweeper:
    """
    Periodic eviction loop for a ``DedupCache``.

    Usage:
        sweeper = DedupSweeper(cache, interval_seconds=60)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, cache: DedupCache, interval_seconds: float = 60.0):
        self._cache = cache
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Dedup sweeper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="dedup_sweeper")
        logger.info(f"Dedup sweeper started: interval={self._interval}s, ttl={self._cache.ttl_seconds}s")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Dedup sweeper stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                self._cache.sweep()
            except Exception as exc:
                logger.error(f"Dedup sweep failed: {exc}", exc_info=True)
                inc_counter("dedup_sweep_errors")
