from __future__ import annotations

import logging
from typing import Optional

from order_engine.common.logging import log_event
from order_engine.execution.models import Order
from order_engine.execution.pipeline import ExecutionPipeline
from order_engine.messaging.job_queue import JobQueue
from order_engine.messaging.notifications import OrderNotification
from order_engine.messaging.subscribers import NotificationSink, SubscriberRegistry

logger = logging.getLogger(__name__)


class OrderQueue:
    """
    What the transport layer talks to: enqueue orders, bind/unbind subscribers,
    drain on shutdown.

    Built once by the runtime and handed to the app; there is no module-level instance.
    """

    def __init__(self, *, job_queue: JobQueue, pipeline: ExecutionPipeline, registry: SubscriberRegistry) -> None:
        self.job_queue = job_queue
        self.pipeline = pipeline
        self.registry = registry
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started and bool(self.job_queue.is_running)

    async def start(self) -> None:
        if self._started:
            return
        await self.job_queue.start(self._handle)
        self._started = True

    async def _handle(self, order: Order) -> None:
        await self.pipeline.process(order)

    async def add_order(self, order: Order) -> None:
        """Fire-and-forget: returns once the job is queued."""
        await self.job_queue.enqueue(order)
        log_event(logger, "order.queued", order_id=order.id)

    async def register_websocket(self, order_id: str, sink: NotificationSink) -> None:
        await self.registry.bind(order_id, sink)

    async def unregister_websocket(self, order_id: str, sink: Optional[NotificationSink] = None) -> None:
        await self.registry.unbind(order_id, sink)

    async def notify(self, order_id: str, notification: OrderNotification) -> bool:
        return await self.registry.notify(order_id, notification)

    async def close(self) -> None:
        """Stop taking work and let in-flight orders reach a terminal state."""
        await self.job_queue.close()
        self._started = False
