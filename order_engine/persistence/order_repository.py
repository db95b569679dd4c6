from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, TypeVar

import psycopg2
import psycopg2.extras
import psycopg2.pool

from order_engine.common.errors import DatabaseError, OrderStateError
from order_engine.common.logging import log_event
from order_engine.execution.models import ExecutionResult, Order, OrderStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS orders (
  id VARCHAR(255) PRIMARY KEY,
  token_in VARCHAR(50) NOT NULL,
  token_out VARCHAR(50) NOT NULL,
  amount_in NUMERIC(20, 8) NOT NULL,
  amount_out NUMERIC(20, 8),
  order_type VARCHAR(20) NOT NULL,
  status VARCHAR(20) NOT NULL,
  selected_dex VARCHAR(50),
  execution_price NUMERIC(20, 8),
  tx_hash VARCHAR(255),
  retry_count INTEGER DEFAULT 0,
  error_message TEXT,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at DESC);
"""

_INSERT_SQL = (
    "INSERT INTO orders (id, token_in, token_out, amount_in, order_type, status, retry_count, created_at, updated_at) "
    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)"
)

# Terminal rows are never rewritten.
_UPDATE_STATUS_SQL = (
    "UPDATE orders SET status = %s, selected_dex = COALESCE(%s, selected_dex), "
    "amount_out = COALESCE(%s, amount_out), execution_price = COALESCE(%s, execution_price), "
    "tx_hash = COALESCE(%s, tx_hash), error_message = COALESCE(%s, error_message), updated_at = %s "
    "WHERE id = %s AND status NOT IN ('confirmed', 'failed')"
)

_SELECT_BY_ID_SQL = "SELECT * FROM orders WHERE id = %s"
_SELECT_PAGE_SQL = "SELECT * FROM orders ORDER BY created_at DESC LIMIT %s OFFSET %s"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _opt_float(v: Any) -> Optional[float]:
    return float(v) if v is not None else None


def _aware(dt: Any) -> datetime:
    if isinstance(dt, datetime):
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
    return _utc_now()


class OrderRepository(Protocol):
    async def create_order(self, order: Order) -> None: ...

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        result: Optional[ExecutionResult] = None,
        error_message: Optional[str] = None,
    ) -> None: ...

    async def get_order_by_id(self, order_id: str) -> Optional[Order]: ...

    async def list_orders(self, limit: int, offset: int) -> list[Order]: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


def map_row(row: dict[str, Any]) -> Order:
    return Order(
        id=str(row["id"]),
        token_in=str(row["token_in"]),
        token_out=str(row["token_out"]),
        amount_in=float(row["amount_in"]),
        amount_out=_opt_float(row.get("amount_out")),
        order_type=str(row.get("order_type") or "market"),
        status=OrderStatus(str(row["status"])),
        selected_dex=row.get("selected_dex"),
        executed_price=_opt_float(row.get("execution_price")),
        tx_hash=row.get("tx_hash"),
        retry_count=int(row.get("retry_count") or 0),
        error_message=row.get("error_message"),
        created_at=_aware(row.get("created_at")),
        updated_at=_aware(row.get("updated_at")),
    )


class PostgresOrderRepository:
    """
    Orders table on PostgreSQL via a psycopg2 thread-safe pool.

    psycopg2 is blocking, so every call runs in a worker thread (`asyncio.to_thread`)
    and the event loop keeps serving other orders. Driver errors surface as
    `DatabaseError`, pool exhaustion included.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        min_connections: int = 1,
        max_connections: int = 20,
        pool: Any = None,
    ) -> None:
        if pool is None:
            if not dsn:
                raise ValueError("dsn is required when no pool is supplied")
            pool = psycopg2.pool.ThreadedConnectionPool(int(min_connections), int(max_connections), dsn=dsn)
        self._pool = pool

    def _run(self, what: str, fn: Callable[[Any], T]) -> T:
        conn = None
        try:
            # ThreadedConnectionPool raises PoolError when exhausted instead of waiting.
            conn = self._pool.getconn()
            with conn:
                return fn(conn)
        except psycopg2.Error as e:
            raise DatabaseError(f"Failed to {what}", e) from e
        finally:
            if conn is not None:
                self._pool.putconn(conn)

    async def initialize(self) -> None:
        def _apply(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)

        await asyncio.to_thread(self._run, "apply schema", _apply)
        log_event(logger, "db.schema_ready")

    async def create_order(self, order: Order) -> None:
        def _insert(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    _INSERT_SQL,
                    (
                        order.id,
                        order.token_in,
                        order.token_out,
                        order.amount_in,
                        order.order_type,
                        order.status.value,
                        order.retry_count,
                        order.created_at,
                        order.updated_at,
                    ),
                )

        await asyncio.to_thread(self._run, "create order", _insert)

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        result: Optional[ExecutionResult] = None,
        error_message: Optional[str] = None,
    ) -> None:
        status = OrderStatus(status)

        def _update(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(
                    _UPDATE_STATUS_SQL,
                    (
                        status.value,
                        result.dex if result else None,
                        result.amount_out if result else None,
                        result.executed_price if result else None,
                        result.tx_hash if result else None,
                        error_message,
                        _utc_now(),
                        order_id,
                    ),
                )
                return int(cur.rowcount)

        updated = await asyncio.to_thread(self._run, "update order status", _update)
        if updated == 0:
            raise OrderStateError(order_id, f"not found or already terminal; refusing transition to {status.value}")

    async def get_order_by_id(self, order_id: str) -> Optional[Order]:
        def _select(conn: Any) -> Optional[Order]:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(_SELECT_BY_ID_SQL, (order_id,))
                row = cur.fetchone()
                return map_row(dict(row)) if row else None

        return await asyncio.to_thread(self._run, "get order", _select)

    async def list_orders(self, limit: int, offset: int) -> list[Order]:
        def _select(conn: Any) -> list[Order]:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(_SELECT_PAGE_SQL, (int(limit), int(offset)))
                return [map_row(dict(r)) for r in cur.fetchall()]

        return await asyncio.to_thread(self._run, "list orders", _select)

    async def health_check(self) -> bool:
        def _ping(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                row = cur.fetchone()
                return bool(row) and row[0] == 1

        try:
            return await asyncio.to_thread(self._run, "health check", _ping)
        except Exception:
            return False

    async def close(self) -> None:
        await asyncio.to_thread(self._pool.closeall)


class InMemoryOrderRepository:
    """
    Dict-backed repository with the same terminal-state guard as the Postgres one.
    """

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create_order(self, order: Order) -> None:
        async with self._lock:
            if order.id in self._orders:
                raise DatabaseError(f"Failed to create order: duplicate id {order.id}")
            self._orders[order.id] = order

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        result: Optional[ExecutionResult] = None,
        error_message: Optional[str] = None,
    ) -> None:
        status = OrderStatus(status)
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status in TERMINAL_STATUSES:
                raise OrderStateError(order_id, f"not found or already terminal; refusing transition to {status.value}")
            self._orders[order_id] = current.with_status(status, result=result, error_message=error_message)

    async def get_order_by_id(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def list_orders(self, limit: int, offset: int) -> list[Order]:
        async with self._lock:
            ordered = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        start = max(0, int(offset))
        return ordered[start : start + max(0, int(limit))]

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
