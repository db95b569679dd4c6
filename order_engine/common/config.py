from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_SERVICE_NAME = "order-engine"
DEFAULT_PORT = 3000
DEFAULT_WORKER_CONCURRENCY = 10
DEFAULT_ACTIVE_ORDER_TTL_S = 3600
DEFAULT_QUOTE_LATENCY_S = 0.2
DEFAULT_EXECUTE_LATENCY_S = 2.0
DEFAULT_SETTLE_DELAY_S = 0.5

QUEUE_BACKENDS = frozenset({"memory", "pubsub"})
CACHE_BACKENDS = frozenset({"memory", "firestore"})


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    s = str(raw).strip()
    return s if s else default


def _parse_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _as_int_or_none(v: str | None) -> int | None:
    try:
        return int(v)  # type: ignore[arg-type]
    except Exception:
        return None


@dataclass(frozen=True)
class EngineConfig:
    """
    Process configuration, read once by the entry point and passed down.

    Delays are in seconds and may be 0 (tests run the whole pipeline without waiting).
    """

    service_name: str = DEFAULT_SERVICE_NAME
    env: str = "local"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT

    database_url: Optional[str] = None
    db_pool_max: int = 20

    queue_backend: str = "memory"
    worker_concurrency: int = DEFAULT_WORKER_CONCURRENCY
    pubsub_project_id: Optional[str] = None
    pubsub_topic_id: str = "orders"
    pubsub_subscription_id: str = "orders-worker"

    cache_backend: str = "memory"
    active_order_ttl_s: int = DEFAULT_ACTIVE_ORDER_TTL_S

    quote_latency_s: float = DEFAULT_QUOTE_LATENCY_S
    execute_latency_s: float = DEFAULT_EXECUTE_LATENCY_S
    settle_delay_s: float = DEFAULT_SETTLE_DELAY_S
    router_seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.queue_backend not in QUEUE_BACKENDS:
            raise ValueError(f"QUEUE_BACKEND must be one of {sorted(QUEUE_BACKENDS)}, got {self.queue_backend!r}")
        if self.cache_backend not in CACHE_BACKENDS:
            raise ValueError(f"CACHE_BACKEND must be one of {sorted(CACHE_BACKENDS)}, got {self.cache_backend!r}")
        if self.worker_concurrency < 1:
            raise ValueError("WORKER_CONCURRENCY must be >= 1")
        if self.queue_backend == "pubsub" and not self.pubsub_project_id:
            raise ValueError("QUEUE_BACKEND=pubsub requires PUBSUB_PROJECT_ID (or GOOGLE_CLOUD_PROJECT)")
        for name in ("quote_latency_s", "execute_latency_s", "settle_delay_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def repository_backend(self) -> str:
        return "postgres" if self.database_url else "memory"

    @staticmethod
    def from_env() -> "EngineConfig":
        return EngineConfig(
            service_name=_env_str("SERVICE_NAME", DEFAULT_SERVICE_NAME) or DEFAULT_SERVICE_NAME,
            env=_env_str("ENV", "local") or "local",
            log_level=(_env_str("LOG_LEVEL", "INFO") or "INFO").upper(),
            host=_env_str("HOST", "0.0.0.0") or "0.0.0.0",
            port=_parse_int_env("PORT", DEFAULT_PORT),
            database_url=_env_str("DATABASE_URL"),
            db_pool_max=max(1, _parse_int_env("DB_POOL_MAX", 20)),
            queue_backend=(_env_str("QUEUE_BACKEND", "memory") or "memory").lower(),
            worker_concurrency=_parse_int_env("WORKER_CONCURRENCY", DEFAULT_WORKER_CONCURRENCY),
            pubsub_project_id=_env_str("PUBSUB_PROJECT_ID") or _env_str("GOOGLE_CLOUD_PROJECT"),
            pubsub_topic_id=_env_str("PUBSUB_TOPIC_ID", "orders") or "orders",
            pubsub_subscription_id=_env_str("PUBSUB_SUBSCRIPTION_ID", "orders-worker") or "orders-worker",
            cache_backend=(_env_str("CACHE_BACKEND", "memory") or "memory").lower(),
            active_order_ttl_s=_parse_int_env("ACTIVE_ORDER_TTL_S", DEFAULT_ACTIVE_ORDER_TTL_S),
            quote_latency_s=_parse_float_env("QUOTE_LATENCY_S", DEFAULT_QUOTE_LATENCY_S),
            execute_latency_s=_parse_float_env("EXECUTE_LATENCY_S", DEFAULT_EXECUTE_LATENCY_S),
            settle_delay_s=_parse_float_env("SETTLE_DELAY_S", DEFAULT_SETTLE_DELAY_S),
            router_seed=_as_int_or_none(_env_str("ROUTER_SEED")),
        )
