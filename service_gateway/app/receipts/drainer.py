"""
Background consumer for the receipt queue.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .durable_queue import DurableQueue, QueueItem

SettleFn = Callable[[QueueItem], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class QueueDrainer:
    """Single-flight drain loop owned by the gateway service.

    ``trigger()`` is called after every enqueue and never waits for the
    drain. At most one drain pass runs per process; a trigger that arrives
    while a pass is running schedules one more pass so late pushes are not
    left behind.
    """

    def __init__(
        self,
        queue: DurableQueue,
        settle: SettleFn,
        metrics: Optional[MetricsCollector] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.queue = queue
        self.settle = settle
        self.metrics = metrics
        self._clock_ms = clock_ms
        self.logger = get_logger("gateway.receipts.drainer")

        self._running = False
        self._rerun = False
        self._closing = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def drain(self) -> int:
        """Drain until the queue is empty. Returns the number of items processed.

        A call made while another pass is running returns 0 immediately.
        """
        if self._running:
            return 0
        self._running = True
        processed = 0
        try:
            while True:
                depth = await self.queue.size()
                if depth <= 0:
                    break
                self._set_depth(depth)

                item = await self.queue.pop()
                if item is None:
                    break

                await self._settle(item)
                lag = max(0, self._clock_ms() - item.enqueued_at)
                if self.metrics:
                    self.metrics.observe_histogram("receipt_lag_ms", lag)
                processed += 1
        finally:
            self._set_depth(0)
            self._running = False

        if processed:
            self.logger.debug("Drain pass complete", processed=processed)
        return processed

    def trigger(self) -> Optional[asyncio.Task]:
        """Schedule a drain on the running loop without waiting for it."""
        if self._closing:
            return None
        if self._task is not None and not self._task.done():
            self._rerun = True
            return self._task

        self._task = asyncio.get_running_loop().create_task(self._run(), name="queue-drainer")
        self._task.add_done_callback(self._on_done)
        return self._task

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Let an in-flight drain finish, cancelling it after ``timeout`` seconds."""
        self._closing = True
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Drain did not finish before shutdown timeout", timeout=timeout)
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            self._rerun = False
            await self.drain()
            if not self._rerun or self._closing:
                break

    async def _settle(self, item: QueueItem) -> None:
        try:
            await self.settle(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # At-most-once: a failed item is reported, not re-enqueued.
            self.logger.error("Settlement failed", item_id=item.id, kind=item.kind, error=str(e))
            if self.metrics:
                self.metrics.increment_counter("settlement_failures_total", kind=item.kind)

    def _set_depth(self, depth: int) -> None:
        if self.metrics:
            self.metrics.set_gauge("queue_depth", max(0, depth))

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error("Drain task failed", error=str(error))
