# chatbridge/infra/rate_limiter.py
from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Optional

from chatbridge.infra.logging_config import get_logger

logger = get_logger(__name__)


def _mask_key(key: str) -> str:
    return key[:4] + "***" if len(key) > 4 else "***"


class InMemoryRateLimiter:
    """
    Sliding-window limiter with a penalty block.

    A key may make ``max_requests`` calls per ``window_seconds``.  The call
    that would exceed the limit starts a block of ``block_seconds``
    (the window length by default) during which every call is refused.

    Keys with no hit inside the window and no active block are dropped,
    at most once per window, so memory follows the set of active keys.

    ⚠️ Per-process state: with N replicas a key gets N × max_requests.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = 60,
        block_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.block_seconds = window_seconds if block_seconds is None else block_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._blocked_until: dict[str, float] = {}
        self._lock = Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        """Number of keys currently tracked"""
        with self._lock:
            return len(self._hits.keys() | self._blocked_until.keys())

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Record one call for ``key``.

        Returns:
            (allowed, retry_after_seconds); retry_after is None when allowed
        """
        now = self._clock()

        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep_locked(now)

            until = self._blocked_until.get(key)
            if until is not None:
                if now < until:
                    return False, int(until - now) + 1
                del self._blocked_until[key]

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()

            if len(hits) < self.max_requests:
                hits.append(now)
                return True, None

            # Refused calls are not recorded as hits
            self._blocked_until[key] = now + self.block_seconds
            retry_after = int(self.block_seconds) + 1
            count = len(hits)

        logger.warning(
            f"Rate limit exceeded: key={_mask_key(key)}, count={count}, "
            f"limit={self.max_requests}, retry_after={retry_after}s",
            extra={"key_masked": _mask_key(key), "retry_after": retry_after},
        )
        return False, retry_after

    def sweep(self) -> int:
        """Drop idle keys and lapsed blocks. Returns the number of keys removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        cutoff = now - self.window_seconds

        lapsed = [k for k, until in self._blocked_until.items() if now >= until]
        for k in lapsed:
            del self._blocked_until[k]

        idle = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for k in idle:
            del self._hits[k]

        removed = len(set(lapsed) | set(idle))
        if removed:
            logger.debug(f"Rate limiter sweep: removed={removed}, tracked={len(self._hits)}")
        return removed
