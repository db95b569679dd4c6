from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from order_engine.common.keyed_lock import KeyedLock
from order_engine.common.logging import log_event
from order_engine.execution.models import Order

logger = logging.getLogger(__name__)

JobHandler = Callable[[Order], Awaitable[None]]


class QueueClosedError(RuntimeError):
    pass


class JobQueue(Protocol):
    """
    Work queue decoupling enqueue (request path) from processing (worker path).

    Implementations run `handler` once per delivered job, never for two jobs of
    the same order id at the same time, and keep a failing job from stopping
    the worker.
    """

    async def start(self, handler: JobHandler) -> None: ...

    async def enqueue(self, order: Order) -> None: ...

    async def close(self) -> None: ...

    @property
    def is_running(self) -> bool: ...


async def run_job(handler: JobHandler, order: Order, *, locks: KeyedLock, queue_name: str) -> None:
    """
    Run one job under its order's lock. Handler failures are logged, never raised.
    """
    async with locks.hold(order.id):
        try:
            await handler(order)
        except Exception as e:
            log_event(
                logger,
                "queue.job_failed",
                severity="ERROR",
                queue=queue_name,
                order_id=order.id,
                error=f"{type(e).__name__}: {e}",
                exc_info=True,
            )


class InMemoryJobQueue:
    """
    asyncio.Queue drained by a fixed pool of worker tasks.

    Jobs live only in process memory (lost on restart); use the Pub/Sub backend
    when enqueued work has to survive the process.
    """

    name = "memory"

    def __init__(self, *, concurrency: int = 10) -> None:
        if int(concurrency) < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = int(concurrency)
        self._queue: asyncio.Queue[Order] = asyncio.Queue()
        self._locks = KeyedLock()
        self._workers: list[asyncio.Task] = []
        self._handler: Optional[JobHandler] = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and not self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self, handler: JobHandler) -> None:
        if self._workers:
            raise RuntimeError("queue already started")
        if self._closed:
            raise QueueClosedError("queue is closed")
        self._handler = handler
        self._workers = [
            asyncio.create_task(self._worker(slot), name=f"order-worker-{slot}") for slot in range(self.concurrency)
        ]
        log_event(logger, "queue.started", queue=self.name, concurrency=self.concurrency)

    async def enqueue(self, order: Order) -> None:
        if self._closed:
            raise QueueClosedError("queue is closed; not accepting new orders")
        await self._queue.put(order)

    async def _worker(self, slot: int) -> None:
        while True:
            order = await self._queue.get()
            try:
                if self._handler is not None:
                    await run_job(self._handler, order, locks=self._locks, queue_name=self.name)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """
        Stop accepting work, let queued and in-flight jobs finish, then stop the workers.
        """
        if self._closed:
            return
        self._closed = True
        if self._workers:
            await self._queue.join()
        for t in self._workers:
            t.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        log_event(logger, "queue.closed", queue=self.name)
