from __future__ import annotations

import json

import pytest

from order_engine.execution.models import Order, OrderStatus
from order_engine.messaging.envelope import JOB_SCHEMA_VERSION, JobEnvelope


def test_envelope_carries_order_in_wire_form(monkeypatch) -> None:
    monkeypatch.setenv("SERVICE_NAME", "order-api")
    order = Order.new(token_in="SOL", token_out="USDC", amount_in=1.5)
    env = JobEnvelope.for_order(order)

    d = json.loads(env.to_json())
    assert d["schemaVersion"] == JOB_SCHEMA_VERSION
    assert d["job_type"] == "order.execute"
    assert d["producer"] == "order-api"
    assert d["payload"]["tokenIn"] == "SOL"
    assert d["payload"]["status"] == "pending"

    back = JobEnvelope.from_bytes(env.to_bytes())
    assert back.job_id == env.job_id
    restored = back.order()
    assert restored.id == order.id
    assert restored.status == OrderStatus.PENDING
    assert restored.created_at == order.created_at


def test_unknown_schema_version_is_rejected() -> None:
    d = JobEnvelope.for_order(Order.new(token_in="SOL", token_out="USDC", amount_in=1)).to_dict()
    d["schemaVersion"] = 2
    with pytest.raises(ValueError):
        JobEnvelope.from_dict(d)


def test_payload_must_be_an_object() -> None:
    d = JobEnvelope.for_order(Order.new(token_in="SOL", token_out="USDC", amount_in=1)).to_dict()
    d["payload"] = "nope"
    with pytest.raises(ValueError):
        JobEnvelope.from_dict(d)


def test_other_job_types_do_not_decode_as_orders() -> None:
    env = JobEnvelope(schemaVersion=1, job_type="order.cancel", producer="x", ts="t", payload={"id": "o-1"})
    with pytest.raises(ValueError):
        env.order()


def test_non_object_json_is_rejected() -> None:
    with pytest.raises(ValueError):
        JobEnvelope.from_bytes(b"[1, 2]")
