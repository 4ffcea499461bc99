# chatbridge/infra/metrics.py
"""
Process-local counters and latency samples, exposed on GET /metrics.

Keys are ``name`` or ``name{label=value,...}`` with labels sorted, so the
same label set always lands on the same key.  Latency series keep only
the most recent samples to bound memory in a long-running process.
"""
from __future__ import annotations

import time
from collections import deque
from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from chatbridge.infra.logging_config import get_logger

logger = get_logger(__name__)

MAX_SAMPLES = 1000


def _summarize(samples: deque[float]) -> dict:
    if not samples:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

    ordered = sorted(samples)
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "p95": ordered[min(int(n * 0.95), n - 1)],
        "p99": ordered[min(int(n * 0.99), n - 1)],
    }


class MetricsCollector:
    def __init__(self, max_samples: int = MAX_SAMPLES):
        self._max_samples = max_samples
        self._counters: dict[str, int] = {}
        self._samples: dict[str, deque[float]] = {}
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            series = self._samples.get(key)
            if series is None:
                series = self._samples[key] = deque(maxlen=self._max_samples)
            series.append(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            samples = {k: deque(v) for k, v in self._samples.items()}

        return {
            "counters": counters,
            "histograms": {k: _summarize(v) for k, v in samples.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._samples.clear()
        logger.debug("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


@contextmanager
def timed(metric_name: str, **labels) -> Iterator[None]:
    """Record the wall time of the block, also when it raises"""
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_histogram(metric_name, time.perf_counter() - started, **labels)


class AppMetrics:
    """Named bridge metrics, so call sites never spell counter keys"""

    @staticmethod
    def webhook_received(event_type: str) -> None:
        inc_counter("webhook_events_total", event_type=event_type)

    @staticmethod
    def webhook_rejected(reason: str) -> None:
        inc_counter("webhook_rejected_total", reason=reason)

    @staticmethod
    def message_skipped(reason: str) -> None:
        inc_counter("messages_skipped_total", reason=reason)

    @staticmethod
    def relay_dispatched() -> None:
        inc_counter("relay_tasks_dispatched")

    @staticmethod
    def relay_failed(stage: str) -> None:
        inc_counter("relay_tasks_failed", stage=stage)

    @staticmethod
    def verification_result(success: bool, refresh: bool) -> None:
        inc_counter(
            "chat_verifications_total",
            status="success" if success else "failed",
            kind="refresh" if refresh else "initial",
        )

    @staticmethod
    def track_nlu_latency():
        return timed("nlu_request_seconds")

    @staticmethod
    def track_relay_time():
        return timed("relay_task_seconds")
