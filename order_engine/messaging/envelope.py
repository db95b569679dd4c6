from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from order_engine.execution.models import Order

JOB_SCHEMA_VERSION = 1
ORDER_JOB_TYPE = "order.execute"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _default_producer() -> str:
    return (os.getenv("SERVICE_NAME") or "").strip() or "order-engine"


def _first_present(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for k in keys:
        if k in data:
            return data.get(k)
    return None


def _require_str(data: Mapping[str, Any], keys: Sequence[str], *, field_name: str) -> str:
    v = _first_present(data, keys)
    s = str(v).strip() if v is not None else ""
    if not s:
        raise ValueError(f"Missing required field: {field_name}")
    return s


def _require_int(data: Mapping[str, Any], keys: Sequence[str], *, field_name: str) -> int:
    v = _first_present(data, keys)
    if v is None:
        raise ValueError(f"Missing required field: {field_name}")
    try:
        return int(v)
    except Exception as e:
        raise ValueError(f"Invalid integer for field: {field_name}") from e


@dataclass(frozen=True, slots=True)
class JobEnvelope:
    """
    Durable work item published to the job queue.

    Required fields:
      - schemaVersion: envelope schema version (this contract: 1)
      - job_type: stable job identifier ("order.execute")
      - producer: logical name of the enqueuing service
      - ts: ISO-8601 enqueue timestamp (UTC)
      - payload: the order, in its camelCase wire form
      - job_id: unique per enqueue (redeliveries keep the same job_id)
    """

    schemaVersion: int
    job_type: str
    producer: str
    ts: str
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @staticmethod
    def for_order(order: Order, *, producer: Optional[str] = None) -> "JobEnvelope":
        return JobEnvelope(
            schemaVersion=JOB_SCHEMA_VERSION,
            job_type=ORDER_JOB_TYPE,
            producer=str(producer or _default_producer()),
            ts=_utc_now_iso(),
            payload=order.to_dict(),
        )

    def order(self) -> Order:
        if self.job_type != ORDER_JOB_TYPE:
            raise ValueError(f"Unsupported job_type: {self.job_type}")
        return Order.from_dict(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": int(self.schemaVersion),
            "job_type": self.job_type,
            "producer": self.producer,
            "ts": self.ts,
            "payload": self.payload,
            "job_id": self.job_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "JobEnvelope":
        schema_version = _require_int(data, ("schemaVersion", "schema_version"), field_name="schemaVersion")
        if schema_version != JOB_SCHEMA_VERSION:
            raise ValueError(f"Unsupported schemaVersion for JobEnvelope: {schema_version}")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise ValueError("JobEnvelope payload must be an object")
        return JobEnvelope(
            schemaVersion=schema_version,
            job_type=_require_str(data, ("job_type", "jobType"), field_name="job_type"),
            producer=_require_str(data, ("producer",), field_name="producer"),
            ts=_require_str(data, ("ts",), field_name="ts"),
            payload=dict(payload),
            job_id=_require_str(data, ("job_id", "jobId"), field_name="job_id"),
        )

    @staticmethod
    def from_bytes(data: bytes) -> "JobEnvelope":
        decoded = json.loads(data.decode("utf-8"))
        if not isinstance(decoded, dict):
            raise ValueError("JobEnvelope JSON must decode to an object")
        return JobEnvelope.from_dict(decoded)
