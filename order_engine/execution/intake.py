from __future__ import annotations

import logging

from order_engine.common.logging import bind_order_id, log_event
from order_engine.execution.models import Order
from order_engine.execution.order_queue import OrderQueue
from order_engine.messaging.notifications import OrderNotification
from order_engine.messaging.subscribers import NotificationSink
from order_engine.persistence.active_order_cache import ActiveOrderCache
from order_engine.persistence.order_repository import OrderRepository

logger = logging.getLogger(__name__)


class OrderIntake:
    """
    Request-path half of the engine: record the order, bind its subscriber,
    acknowledge with `pending`, and queue it. Execution happens later on a worker.
    """

    def __init__(
        self,
        *,
        repository: OrderRepository,
        cache: ActiveOrderCache,
        queue: OrderQueue,
        active_order_ttl_s: int = 3600,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.queue = queue
        self.active_order_ttl_s = int(active_order_ttl_s)

    async def submit(self, request, sink: NotificationSink) -> Order:
        """
        `request` is a validated `OrderRequest`.

        Any error raised once the order id exists carries it as `order_id`, so
        the transport can name the order in its error frame.
        """
        order = Order.new(
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount_in,
            order_type=request.order_type,
        )
        with bind_order_id(order.id):
            try:
                await self._accept(order, sink)
            except Exception as e:
                if getattr(e, "order_id", None) is None:
                    e.order_id = order.id
                raise

            log_event(
                logger,
                "order.accepted",
                token_in=order.token_in,
                token_out=order.token_out,
                amount_in=order.amount_in,
            )
        return order

    async def _accept(self, order: Order, sink: NotificationSink) -> None:
        await self.repository.create_order(order)
        await self.cache.set(order, self.active_order_ttl_s)

        await self.queue.register_websocket(order.id, sink)
        await self.queue.notify(order.id, OrderNotification.pending(order.id))
        try:
            await self.queue.add_order(order)
        except Exception:
            await self.queue.unregister_websocket(order.id, sink)
            raise
