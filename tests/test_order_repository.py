from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool
import pytest

from order_engine.common.errors import DatabaseError, OrderStateError
from order_engine.execution.models import ExecutionResult, Order, OrderStatus
from order_engine.persistence.order_repository import (
    InMemoryOrderRepository,
    PostgresOrderRepository,
    map_row,
)

_RESULT = ExecutionResult(dex="raydium", executed_price=0.0501, amount_out=0.0749, tx_hash="5" + "b" * 87)


def _order(i: int = 0) -> Order:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=i)
    return Order(id=f"o-{i}", token_in="SOL", token_out="USDC", amount_in=1.0 + i, created_at=base, updated_at=base)


# --- in-memory ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_memory_create_then_confirm(repository: InMemoryOrderRepository) -> None:
    await repository.create_order(_order())
    await repository.update_order_status("o-0", OrderStatus.CONFIRMED, result=_RESULT)

    stored = await repository.get_order_by_id("o-0")
    assert stored.status == OrderStatus.CONFIRMED
    assert stored.selected_dex == "raydium"
    assert stored.amount_out == pytest.approx(0.0749)
    assert stored.executed_price == pytest.approx(0.0501)
    assert stored.tx_hash == _RESULT.tx_hash


@pytest.mark.asyncio
async def test_memory_duplicate_create_is_a_database_error(repository: InMemoryOrderRepository) -> None:
    await repository.create_order(_order())
    with pytest.raises(DatabaseError):
        await repository.create_order(_order())


@pytest.mark.asyncio
async def test_memory_terminal_rows_are_never_rewritten(repository: InMemoryOrderRepository) -> None:
    await repository.create_order(_order())
    await repository.update_order_status("o-0", OrderStatus.FAILED, error_message="no route")

    with pytest.raises(OrderStateError) as ei:
        await repository.update_order_status("o-0", OrderStatus.CONFIRMED, result=_RESULT)
    assert ei.value.status_code == 409
    stored = await repository.get_order_by_id("o-0")
    assert stored.status == OrderStatus.FAILED
    assert stored.error_message == "no route"


@pytest.mark.asyncio
async def test_memory_update_of_unknown_order_is_refused(repository: InMemoryOrderRepository) -> None:
    with pytest.raises(OrderStateError):
        await repository.update_order_status("missing", OrderStatus.CONFIRMED, result=_RESULT)
    assert await repository.get_order_by_id("missing") is None


@pytest.mark.asyncio
async def test_memory_list_is_newest_first_and_paged(repository: InMemoryOrderRepository) -> None:
    for i in range(5):
        await repository.create_order(_order(i))

    page = await repository.list_orders(2, 1)
    assert [o.id for o in page] == ["o-3", "o-2"]
    assert await repository.list_orders(10, 10) == []


# --- postgres (fake driver) --------------------------------------------------


class FakeCursor:
    def __init__(self, conn: "FakeConn") -> None:
        self.conn = conn
        self.rowcount = conn.rowcount

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def execute(self, sql: str, params: Any = None) -> None:
        if self.conn.raise_on_execute is not None:
            raise self.conn.raise_on_execute
        self.conn.executed.append((sql, params))

    def fetchone(self) -> Optional[Any]:
        return self.conn.rows[0] if self.conn.rows else None

    def fetchall(self) -> list[Any]:
        return list(self.conn.rows)


class FakeConn:
    def __init__(self) -> None:
        self.executed: list[tuple[str, Any]] = []
        self.rows: list[Any] = []
        self.rowcount = 1
        self.raise_on_execute: Optional[BaseException] = None
        self.cursor_factories: list[Any] = []
        self.commits = 0

    def __enter__(self) -> "FakeConn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commits += 1

    def cursor(self, cursor_factory: Any = None) -> FakeCursor:
        self.cursor_factories.append(cursor_factory)
        return FakeCursor(self)


class FakePool:
    def __init__(self) -> None:
        self.conn = FakeConn()
        self.out = 0
        self.closed = False

    def getconn(self) -> FakeConn:
        self.out += 1
        return self.conn

    def putconn(self, conn: FakeConn) -> None:
        self.out -= 1

    def closeall(self) -> None:
        self.closed = True


def _row(status: str = "confirmed") -> dict[str, Any]:
    ts = datetime(2026, 1, 1, 12, 0, 0)
    return {
        "id": "o-1",
        "token_in": "SOL",
        "token_out": "USDC",
        "amount_in": 1.5,
        "amount_out": 0.0749,
        "order_type": "market",
        "status": status,
        "selected_dex": "meteora",
        "execution_price": 0.0501,
        "tx_hash": "5abc",
        "retry_count": 0,
        "error_message": None,
        "created_at": ts,
        "updated_at": ts,
    }


@pytest.mark.asyncio
async def test_postgres_create_inserts_pending_row() -> None:
    pool = FakePool()
    repo = PostgresOrderRepository(pool=pool)
    order = _order(1)
    await repo.create_order(order)

    ((sql, params),) = pool.conn.executed
    assert sql.startswith("INSERT INTO orders")
    assert params[0] == "o-1"
    assert params[5] == "pending"
    assert pool.conn.commits == 1
    assert pool.out == 0


@pytest.mark.asyncio
async def test_postgres_update_passes_result_columns() -> None:
    pool = FakePool()
    repo = PostgresOrderRepository(pool=pool)
    await repo.update_order_status("o-1", OrderStatus.CONFIRMED, result=_RESULT)

    ((sql, params),) = pool.conn.executed
    assert "status NOT IN ('confirmed', 'failed')" in sql
    assert params[:5] == ("confirmed", "raydium", 0.0749, 0.0501, _RESULT.tx_hash)
    assert params[-1] == "o-1"


@pytest.mark.asyncio
async def test_postgres_update_on_terminal_row_raises_state_error() -> None:
    pool = FakePool()
    pool.conn.rowcount = 0
    repo = PostgresOrderRepository(pool=pool)
    with pytest.raises(OrderStateError):
        await repo.update_order_status("o-1", OrderStatus.CONFIRMED, result=_RESULT)


@pytest.mark.asyncio
async def test_postgres_get_maps_row() -> None:
    pool = FakePool()
    pool.conn.rows = [_row()]
    repo = PostgresOrderRepository(pool=pool)

    order = await repo.get_order_by_id("o-1")
    assert order.status == OrderStatus.CONFIRMED
    assert order.executed_price == pytest.approx(0.0501)
    assert order.created_at.tzinfo is not None
    assert pool.conn.cursor_factories[-1] is psycopg2.extras.RealDictCursor


@pytest.mark.asyncio
async def test_postgres_list_passes_paging() -> None:
    pool = FakePool()
    pool.conn.rows = [_row(), _row("pending")]
    repo = PostgresOrderRepository(pool=pool)

    orders = await repo.list_orders(25, 50)
    assert [o.status for o in orders] == [OrderStatus.CONFIRMED, OrderStatus.PENDING]
    assert pool.conn.executed[-1][1] == (25, 50)


@pytest.mark.asyncio
async def test_postgres_driver_error_becomes_database_error() -> None:
    pool = FakePool()
    pool.conn.raise_on_execute = psycopg2.OperationalError("connection reset")
    repo = PostgresOrderRepository(pool=pool)

    with pytest.raises(DatabaseError) as ei:
        await repo.create_order(_order())
    assert ei.value.message == "Failed to create order"
    assert pool.out == 0


class ExhaustedPool(FakePool):
    def getconn(self) -> FakeConn:
        raise psycopg2.pool.PoolError("connection pool exhausted")

    def putconn(self, conn: FakeConn) -> None:
        raise AssertionError("nothing was checked out")


@pytest.mark.asyncio
async def test_postgres_pool_exhaustion_becomes_database_error() -> None:
    repo = PostgresOrderRepository(pool=ExhaustedPool())

    with pytest.raises(DatabaseError) as ei:
        await repo.get_order_by_id("x")
    assert ei.value.status_code == 500
    assert isinstance(ei.value.__cause__, psycopg2.pool.PoolError)


@pytest.mark.asyncio
async def test_postgres_health_check() -> None:
    pool = FakePool()
    pool.conn.rows = [(1,)]
    repo = PostgresOrderRepository(pool=pool)
    assert await repo.health_check() is True

    pool.conn.raise_on_execute = psycopg2.OperationalError("down")
    assert await repo.health_check() is False

    await repo.close()
    assert pool.closed


def test_postgres_requires_dsn_or_pool() -> None:
    with pytest.raises(ValueError):
        PostgresOrderRepository()


def test_map_row_handles_missing_fill() -> None:
    row = _row("pending")
    row.update(amount_out=None, execution_price=None, selected_dex=None, tx_hash=None)
    order = map_row(row)
    assert order.amount_out is None
    assert order.executed_price is None
    assert order.status == OrderStatus.PENDING
