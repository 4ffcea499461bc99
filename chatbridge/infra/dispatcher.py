# chatbridge/infra/dispatcher.py
"""
In-process async dispatcher for relay tasks.

The webhook handler acknowledges the live-chat platform immediately and
hands the slow part (typing indicator, NLU round-trip, outbound reply) to
this dispatcher.  Tasks go into a bounded queue served by a fixed pool of
worker coroutines; a failed task is logged and counted, never re-raised.

Tasks are not persisted: anything still queued when the process stops is
lost.  The source event was already acknowledged, so it is not retried.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from chatbridge.core.domain import RelayTask
from chatbridge.infra.logging_config import get_logger, LogContext
from chatbridge.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)

RelayHandler = Callable[[RelayTask], Awaitable[object]]


class RelayDispatcher:
    """
    Bounded worker pool for fire-and-forget relay work.

    Usage:
        dispatcher = RelayDispatcher(bridge.relay, workers=4, queue_size=100)
        await dispatcher.start()
        dispatcher.submit(task)
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        handler: RelayHandler,
        *,
        workers: int = 4,
        queue_size: int = 100,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._handler = handler
        self._worker_count = workers
        self._queue: asyncio.Queue[RelayTask] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            logger.warning("Relay dispatcher already running")
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"relay_worker_{i}")
            for i in range(self._worker_count)
        ]
        for task in self._workers:
            task.add_done_callback(self._on_worker_done)
        logger.info(
            f"Relay dispatcher started: workers={self._worker_count}, "
            f"queue_size={self._queue.maxsize}"
        )

    def submit(self, task: RelayTask) -> bool:
        """
        Queue a task without waiting.

        Returns:
            True if the task was accepted, False if the dispatcher is not
            running or the queue is full.
        """
        if not self._running:
            logger.warning("Relay dispatcher not running, task dropped")
            inc_counter("relay_tasks_rejected", reason="not_running")
            return False

        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            LogContext(logger, conversation_id=task.conversation_id).warning(
                f"Relay queue full ({self._queue.maxsize}), task dropped"
            )
            inc_counter("relay_tasks_rejected", reason="queue_full")
            return False

        AppMetrics.relay_dispatched()
        return True

    async def drain(self) -> None:
        """Wait until every queued task has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop the workers. Queued tasks that have not started are discarded."""
        self._running = False
        for task in self._workers:
            if not task.done():
                task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.warning(f"Relay dispatcher stopped with {dropped} queued task(s) discarded")
        logger.info("Relay dispatcher stopped")

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._execute(task)
            finally:
                self._queue.task_done()

    async def _execute(self, task: RelayTask) -> None:
        log_ctx = LogContext(
            logger,
            conversation_id=task.conversation_id,
            room_id=task.room_id,
            session_id=task.session_id,
        )
        try:
            with AppMetrics.track_relay_time():
                await self._handler(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Error sink: nobody awaits this task, so the log is the report
            AppMetrics.relay_failed("handler")
            log_ctx.error(
                f"Relay task failed: {exc.__class__.__name__}: {exc}",
                exc_info=True,
            )

    @staticmethod
    def _on_worker_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Relay worker {task.get_name()!r} died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
