from __future__ import annotations

import asyncio
import logging
from typing import Optional

from order_engine.common.errors import OrderExecutionError, get_error_message
from order_engine.common.logging import bind_order_id, log_event
from order_engine.execution.dex_router import MockDexRouter
from order_engine.execution.models import Order, OrderStatus
from order_engine.execution.order_lifecycle import OrderStateMachine
from order_engine.messaging.notifications import OrderNotification
from order_engine.messaging.subscribers import SubscriberRegistry
from order_engine.persistence.active_order_cache import ActiveOrderCache
from order_engine.persistence.order_repository import OrderRepository

logger = logging.getLogger(__name__)


class ExecutionPipeline:
    """
    Drives one order from `pending` to a terminal state.

    Success path, one notification per step:

        routing ("Comparing DEX prices")
        routing (venue selected, estimated output)
        building
        confirmed (persisted first), then the sink is closed and unbound

    Anything raised along the way ends in a single `failed` notification. Nothing
    is re-raised to the queue, retried or re-enqueued, and a failure is written
    only to the active-order cache, never to the repository.
    """

    def __init__(
        self,
        *,
        router: MockDexRouter,
        registry: SubscriberRegistry,
        repository: OrderRepository,
        cache: Optional[ActiveOrderCache] = None,
        settle_delay_s: float = 0.5,
        active_order_ttl_s: int = 3600,
    ) -> None:
        self.router = router
        self.registry = registry
        self.repository = repository
        self.cache = cache
        self.settle_delay_s = max(0.0, float(settle_delay_s))
        self.active_order_ttl_s = int(active_order_ttl_s)

    async def process(self, order: Order) -> Optional[OrderStatus]:
        """
        Returns the terminal status reached, or None when the job was a duplicate delivery.
        """
        with bind_order_id(order.id):
            if await self._already_terminal(order.id):
                return None

            sm = OrderStateMachine(order.id)
            try:
                await self._run(order, sm)
                return OrderStatus.CONFIRMED
            except Exception as e:
                await self._fail(order, sm, e)
                return OrderStatus.FAILED

    async def _already_terminal(self, order_id: str) -> bool:
        # Queue redelivery guard: never touch a venue twice for a finished order.
        try:
            existing = await self.repository.get_order_by_id(order_id)
        except Exception as e:
            log_event(
                logger,
                "order.status_lookup_failed",
                severity="WARNING",
                error=f"{type(e).__name__}: {e}",
            )
            return False
        if existing is not None and existing.status.is_terminal:
            log_event(logger, "order.duplicate_delivery", severity="WARNING", status=existing.status.value)
            return True
        return False

    async def _run(self, order: Order, sm: OrderStateMachine) -> None:
        sm.advance(OrderStatus.ROUTING)
        await self.registry.notify(order.id, OrderNotification.routing(order.id))

        quote = await self.router.get_best_quote(order.token_in, order.token_out, order.amount_in)
        sm.advance(OrderStatus.ROUTING, selected_dex=quote.dex)
        log_event(
            logger,
            "order.routed",
            selected_dex=quote.dex,
            price=quote.price,
            estimated_output=quote.estimated_output,
        )
        await self.registry.notify(order.id, OrderNotification.route_selected(order.id, quote))

        await asyncio.sleep(self.settle_delay_s)

        sm.advance(OrderStatus.BUILDING)
        await self.registry.notify(order.id, OrderNotification.building(order.id))

        result = await self.router.execute_swap(quote, order.token_in, order.token_out, order.amount_in)

        await self.repository.update_order_status(order.id, OrderStatus.CONFIRMED, result=result)
        sm.advance(OrderStatus.CONFIRMED, tx_hash=result.tx_hash)
        log_event(
            logger,
            "order.confirmed",
            selected_dex=result.dex,
            executed_price=result.executed_price,
            amount_out=result.amount_out,
            tx_hash=result.tx_hash,
        )

        await self._refresh_cache(order.with_status(OrderStatus.CONFIRMED, result=result))

        await self.registry.notify(order.id, OrderNotification.confirmed(order.id, result))
        await self.registry.close_sink(order.id)
        await self.registry.unbind(order.id)

    async def _refresh_cache(self, order: Order) -> None:
        # Best effort: the repository (or the subscriber) already has the outcome.
        if self.cache is None:
            return
        try:
            await self.cache.set(order, self.active_order_ttl_s)
        except Exception as e:
            log_event(
                logger,
                "cache.refresh_failed",
                severity="WARNING",
                status=order.status.value,
                error=f"{type(e).__name__}: {e}",
            )

    async def _fail(self, order: Order, sm: OrderStateMachine, error: Exception) -> None:
        reason = get_error_message(error)
        wrapped = OrderExecutionError(order.id, reason, {"stage": sm.state.value})
        log_event(
            logger,
            "order.failed",
            severity="ERROR",
            message=wrapped.message,
            stage=sm.state.value,
            error_type=type(error).__name__,
            exc_info=(type(error), error, error.__traceback__),
        )
        if not sm.is_terminal:
            sm.fail(error=reason)
        await self._refresh_cache(order.with_status(OrderStatus.FAILED, error_message=reason))
        await self.registry.notify(order.id, OrderNotification.failed(order.id, reason))
        await self.registry.unbind(order.id)
