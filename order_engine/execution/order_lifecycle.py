from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from order_engine.execution.models import TERMINAL_STATUSES, OrderStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


ALLOWED_TRANSITIONS: set[tuple[OrderStatus, OrderStatus]] = {
    # Happy path: no status may be skipped.
    (OrderStatus.PENDING, OrderStatus.ROUTING),
    # Second routing update once a venue has been selected.
    (OrderStatus.ROUTING, OrderStatus.ROUTING),
    (OrderStatus.ROUTING, OrderStatus.BUILDING),
    (OrderStatus.BUILDING, OrderStatus.CONFIRMED),
    # Failure from any non-terminal state.
    (OrderStatus.PENDING, OrderStatus.FAILED),
    (OrderStatus.ROUTING, OrderStatus.FAILED),
    (OrderStatus.BUILDING, OrderStatus.FAILED),
}


def validate_transition(*, prev: OrderStatus, nxt: OrderStatus) -> bool:
    if prev in TERMINAL_STATUSES:
        return False
    return (prev, nxt) in ALLOWED_TRANSITIONS


@dataclass(frozen=True)
class OrderTransition:
    order_id: str
    prev: OrderStatus
    nxt: OrderStatus
    at_utc: datetime
    meta: dict[str, Any] = field(default_factory=dict)


class OrderLifecycleError(RuntimeError):
    pass


class OrderStateMachine:
    """
    Per-order state machine driven by the execution worker.

    One instance lives for one pipeline run, so no locking is needed: the job
    queue never runs two slots for the same order id.
    """

    def __init__(self, order_id: str, initial: OrderStatus = OrderStatus.PENDING) -> None:
        self.order_id = str(order_id)
        self._state = OrderStatus(initial)
        self._history: list[OrderTransition] = []

    @property
    def state(self) -> OrderStatus:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATUSES

    @property
    def history(self) -> list[OrderTransition]:
        return list(self._history)

    def advance(self, nxt: OrderStatus, **meta: Any) -> OrderTransition:
        nxt = OrderStatus(nxt)
        if not validate_transition(prev=self._state, nxt=nxt):
            raise OrderLifecycleError(f"invalid_transition:{self._state.value}->{nxt.value}")
        tr = OrderTransition(order_id=self.order_id, prev=self._state, nxt=nxt, at_utc=_utc_now(), meta=dict(meta))
        self._history.append(tr)
        self._state = nxt
        return tr

    def fail(self, **meta: Any) -> OrderTransition:
        return self.advance(OrderStatus.FAILED, **meta)
