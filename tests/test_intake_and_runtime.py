from __future__ import annotations

import pytest

from order_engine.api.schemas import parse_order_request
from order_engine.common.config import EngineConfig
from order_engine.execution.intake import OrderIntake
from order_engine.execution.models import OrderStatus
from order_engine.execution.order_queue import OrderQueue
from order_engine.execution.pipeline import ExecutionPipeline
from order_engine.messaging.job_queue import InMemoryJobQueue, QueueClosedError
from order_engine.persistence.active_order_cache import InMemoryActiveOrderCache
from order_engine.runtime import OrderEngine
from tests.fakes import RecordingSink


def _intake(router, registry, repository, job_queue: InMemoryJobQueue) -> tuple[OrderIntake, InMemoryActiveOrderCache]:
    cache = InMemoryActiveOrderCache()
    pipeline = ExecutionPipeline(router=router, registry=registry, repository=repository, settle_delay_s=0)
    queue = OrderQueue(job_queue=job_queue, pipeline=pipeline, registry=registry)
    return OrderIntake(repository=repository, cache=cache, queue=queue, active_order_ttl_s=60), cache


@pytest.mark.asyncio
async def test_submit_records_binds_acknowledges_and_queues(router, registry, repository) -> None:
    job_queue = InMemoryJobQueue(concurrency=1)
    intake, cache = _intake(router, registry, repository, job_queue)
    sink = RecordingSink()

    order = await intake.submit(parse_order_request({"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": 1.5}), sink)

    assert (await repository.get_order_by_id(order.id)).status == OrderStatus.PENDING
    assert (await cache.get(order.id)).id == order.id
    assert registry.is_bound(order.id)
    assert sink.messages == [
        {
            "orderId": order.id,
            "status": "pending",
            "message": "Order received and queued for execution",
            "timestamp": sink.messages[0]["timestamp"],
        }
    ]
    assert job_queue.pending() == 1


@pytest.mark.asyncio
async def test_submit_unbinds_when_queue_refuses(router, registry, repository) -> None:
    job_queue = InMemoryJobQueue(concurrency=1)
    await job_queue.close()
    intake, _ = _intake(router, registry, repository, job_queue)

    with pytest.raises(QueueClosedError) as ei:
        await intake.submit(
            parse_order_request({"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": 1}),
            RecordingSink(),
        )
    assert (await repository.get_order_by_id(ei.value.order_id)) is not None
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_engine_start_submit_stop_runs_order_to_completion() -> None:
    cfg = EngineConfig(quote_latency_s=0, execute_latency_s=0, settle_delay_s=0, worker_concurrency=3)
    engine = OrderEngine.from_config(cfg)
    await engine.start()
    assert await engine.health() == {"database": True, "cache": True, "queue": True}

    sinks = [RecordingSink() for _ in range(4)]
    orders = [
        await engine.intake.submit(
            parse_order_request({"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": i + 1}),
            sink,
        )
        for i, sink in enumerate(sinks)
    ]
    await engine.stop()

    for order, sink in zip(orders, sinks):
        assert sink.statuses == ["pending", "routing", "routing", "building", "confirmed"]
        assert (await engine.repository.get_order_by_id(order.id)).status == OrderStatus.CONFIRMED
    assert not engine.is_started
    assert engine.queue.is_running is False

    # Stopping twice is harmless.
    await engine.stop()
