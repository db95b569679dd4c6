from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

from order_engine.common.keyed_lock import KeyedLock
from order_engine.common.logging import log_event
from order_engine.messaging.notifications import OrderNotification

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    """
    A live channel to one subscriber. Starlette's `WebSocket` satisfies this.
    """

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class SubscriberRegistry:
    """
    order id -> single notification sink.

    Every operation on an order id runs under that id's lock, so a transport-side
    bind/unbind never interleaves with a worker's send on the same order, and
    sends for one order leave in the order they were issued. Different order ids
    never contend.
    """

    def __init__(self) -> None:
        self._sinks: dict[str, NotificationSink] = {}
        self._locks = KeyedLock()

    async def bind(self, order_id: str, sink: NotificationSink) -> None:
        oid = str(order_id)
        async with self._locks.hold(oid):
            if oid in self._sinks:
                log_event(logger, "subscriber.rebound", order_id=oid)
            self._sinks[oid] = sink

    async def unbind(self, order_id: str, sink: Optional[NotificationSink] = None) -> bool:
        """
        Remove the binding. With `sink`, only removes it if that sink is still the bound one.
        """
        oid = str(order_id)
        async with self._locks.hold(oid):
            current = self._sinks.get(oid)
            if current is None:
                return False
            if sink is not None and current is not sink:
                return False
            del self._sinks[oid]
            return True

    async def notify(self, order_id: str, notification: OrderNotification) -> bool:
        """
        Best-effort delivery. Returns True if the sink accepted the message.

        Never raises: an unbound order drops the message, a broken sink is logged.
        """
        oid = str(order_id)
        async with self._locks.hold(oid):
            sink = self._sinks.get(oid)
            if sink is None:
                return False
            try:
                await sink.send_text(notification.to_json())
                return True
            except Exception as e:
                log_event(
                    logger,
                    "subscriber.send_failed",
                    severity="WARNING",
                    order_id=oid,
                    status=notification.to_dict()["status"],
                    error=f"{type(e).__name__}: {e}",
                )
                return False

    async def close_sink(self, order_id: str) -> None:
        oid = str(order_id)
        async with self._locks.hold(oid):
            sink = self._sinks.get(oid)
            if sink is None:
                return
            try:
                await sink.close()
            except Exception as e:
                log_event(
                    logger,
                    "subscriber.close_failed",
                    severity="WARNING",
                    order_id=oid,
                    error=f"{type(e).__name__}: {e}",
                )

    def is_bound(self, order_id: str) -> bool:
        return str(order_id) in self._sinks

    def __len__(self) -> int:
        return len(self._sinks)
