from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(v: Any) -> datetime:
    if isinstance(v, datetime):
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)
    s = str(v or "").strip()
    if not s:
        return _utc_now()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _opt_float(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    return float(v)


class OrderStatus(str, Enum):
    """
    Order progression: PENDING -> ROUTING -> BUILDING -> CONFIRMED.

    FAILED is reachable from any non-terminal state.
    """

    PENDING = "pending"
    ROUTING = "routing"
    BUILDING = "building"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({OrderStatus.CONFIRMED, OrderStatus.FAILED})

MARKET_ORDER = "market"


@dataclass(frozen=True)
class Quote:
    dex: str
    price: float
    fee: float
    estimated_output: float


@dataclass(frozen=True)
class ExecutionResult:
    dex: str
    executed_price: float
    amount_out: float
    tx_hash: str


@dataclass(frozen=True)
class Order:
    """
    A single token-for-token market fill and its execution state.

    Instances are immutable; a status change produces a new instance via `with_status`.
    """

    id: str
    token_in: str
    token_out: str
    amount_in: float
    order_type: str = MARKET_ORDER
    status: OrderStatus = OrderStatus.PENDING
    selected_dex: Optional[str] = None
    amount_out: Optional[float] = None
    executed_price: Optional[float] = None
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @staticmethod
    def new(*, token_in: str, token_out: str, amount_in: float, order_type: str = MARKET_ORDER) -> "Order":
        now = _utc_now()
        return Order(
            id=str(uuid.uuid4()),
            token_in=str(token_in),
            token_out=str(token_out),
            amount_in=float(amount_in),
            order_type=str(order_type or MARKET_ORDER),
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    def with_status(
        self,
        status: OrderStatus,
        *,
        result: Optional[ExecutionResult] = None,
        error_message: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> "Order":
        changes: dict[str, Any] = {"status": OrderStatus(status), "updated_at": at or _utc_now()}
        if result is not None:
            changes.update(
                selected_dex=result.dex,
                amount_out=float(result.amount_out),
                executed_price=float(result.executed_price),
                tx_hash=result.tx_hash,
            )
        if error_message is not None:
            changes["error_message"] = str(error_message)
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "amountIn": self.amount_in,
            "amountOut": self.amount_out,
            "orderType": self.order_type,
            "status": self.status.value,
            "selectedDex": self.selected_dex,
            "executionPrice": self.executed_price,
            "txHash": self.tx_hash,
            "retryCount": self.retry_count,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.astimezone(timezone.utc).isoformat(),
            "updatedAt": self.updated_at.astimezone(timezone.utc).isoformat(),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Order":
        oid = str(data.get("id") or "").strip()
        if not oid:
            raise ValueError("Missing required field: id")
        return Order(
            id=oid,
            token_in=str(data["tokenIn"]),
            token_out=str(data["tokenOut"]),
            amount_in=float(data["amountIn"]),
            order_type=str(data.get("orderType") or MARKET_ORDER),
            status=OrderStatus(str(data.get("status") or OrderStatus.PENDING.value)),
            selected_dex=data.get("selectedDex"),
            amount_out=_opt_float(data.get("amountOut")),
            executed_price=_opt_float(data.get("executionPrice")),
            tx_hash=data.get("txHash"),
            error_message=data.get("errorMessage"),
            retry_count=int(data.get("retryCount") or 0),
            created_at=_parse_dt(data.get("createdAt")),
            updated_at=_parse_dt(data.get("updatedAt")),
        )
