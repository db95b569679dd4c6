"""
Progress notifications pushed to an order's subscriber.

Wire shape (one JSON object per text frame):

    {"orderId": str, "status": str, "message": str?, "data": object?, "timestamp": epoch_ms}

The payload is a closed schema keyed by status: only a post-quote `routing`
update carries `RouteSelectedData`, only `confirmed` carries `ConfirmedData`,
and `failed` carries its reason in `message`.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from order_engine.execution.models import ExecutionResult, OrderStatus, Quote


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class RouteSelectedData:
    selected_dex: str
    estimated_output: float

    def to_dict(self) -> dict[str, Any]:
        return {"selectedDex": self.selected_dex, "estimatedOutput": self.estimated_output}


@dataclass(frozen=True, slots=True)
class ConfirmedData:
    tx_hash: str
    executed_price: float
    amount_out: float
    selected_dex: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "executedPrice": self.executed_price,
            "amountOut": self.amount_out,
            "selectedDex": self.selected_dex,
        }


NotificationData = Union[RouteSelectedData, ConfirmedData]

_DATA_TYPE_BY_STATUS: dict[OrderStatus, type] = {
    OrderStatus.ROUTING: RouteSelectedData,
    OrderStatus.CONFIRMED: ConfirmedData,
}


@dataclass(frozen=True, slots=True)
class OrderNotification:
    order_id: str
    status: OrderStatus
    message: Optional[str] = None
    data: Optional[NotificationData] = None
    timestamp_ms: int = field(default_factory=_now_ms)

    def __post_init__(self) -> None:
        status = OrderStatus(self.status)
        if self.data is None:
            if status == OrderStatus.CONFIRMED:
                raise ValueError("confirmed notification requires ConfirmedData")
            return
        expected = _DATA_TYPE_BY_STATUS.get(status)
        if expected is None or not isinstance(self.data, expected):
            raise ValueError(f"{type(self.data).__name__} is not a valid payload for status {status.value}")

    @staticmethod
    def pending(order_id: str, message: str = "Order received and queued for execution") -> "OrderNotification":
        return OrderNotification(order_id=order_id, status=OrderStatus.PENDING, message=message)

    @staticmethod
    def routing(order_id: str, message: str = "Comparing DEX prices") -> "OrderNotification":
        return OrderNotification(order_id=order_id, status=OrderStatus.ROUTING, message=message)

    @staticmethod
    def route_selected(order_id: str, quote: Quote) -> "OrderNotification":
        return OrderNotification(
            order_id=order_id,
            status=OrderStatus.ROUTING,
            message=f"Selected {quote.dex}",
            data=RouteSelectedData(selected_dex=quote.dex, estimated_output=quote.estimated_output),
        )

    @staticmethod
    def building(order_id: str, message: str = "Creating transaction") -> "OrderNotification":
        return OrderNotification(order_id=order_id, status=OrderStatus.BUILDING, message=message)

    @staticmethod
    def confirmed(order_id: str, result: ExecutionResult) -> "OrderNotification":
        return OrderNotification(
            order_id=order_id,
            status=OrderStatus.CONFIRMED,
            message="Transaction successful",
            data=ConfirmedData(
                tx_hash=result.tx_hash,
                executed_price=result.executed_price,
                amount_out=result.amount_out,
                selected_dex=result.dex,
            ),
        )

    @staticmethod
    def failed(order_id: str, reason: str) -> "OrderNotification":
        return OrderNotification(order_id=order_id, status=OrderStatus.FAILED, message=str(reason or "Failed"))

    @property
    def is_terminal(self) -> bool:
        return OrderStatus(self.status).is_terminal

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"orderId": self.order_id, "status": OrderStatus(self.status).value}
        if self.message is not None:
            out["message"] = self.message
        if self.data is not None:
            out["data"] = self.data.to_dict()
        out["timestamp"] = int(self.timestamp_ms)
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
