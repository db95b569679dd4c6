from __future__ import annotations

import pytest

from order_engine.common.config import EngineConfig

_ENV_VARS = (
    "SERVICE_NAME",
    "ENV",
    "LOG_LEVEL",
    "HOST",
    "PORT",
    "DATABASE_URL",
    "DB_POOL_MAX",
    "QUEUE_BACKEND",
    "WORKER_CONCURRENCY",
    "PUBSUB_PROJECT_ID",
    "GOOGLE_CLOUD_PROJECT",
    "PUBSUB_TOPIC_ID",
    "PUBSUB_SUBSCRIPTION_ID",
    "CACHE_BACKEND",
    "ACTIVE_ORDER_TTL_S",
    "QUOTE_LATENCY_S",
    "EXECUTE_LATENCY_S",
    "SETTLE_DELAY_S",
    "ROUTER_SEED",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults_run_fully_in_memory(clean_env) -> None:
    cfg = EngineConfig.from_env()
    assert cfg.port == 3000
    assert cfg.worker_concurrency == 10
    assert cfg.queue_backend == "memory"
    assert cfg.cache_backend == "memory"
    assert cfg.repository_backend == "memory"
    assert cfg.quote_latency_s == 0.2
    assert cfg.execute_latency_s == 2.0
    assert cfg.settle_delay_s == 0.5
    assert cfg.router_seed is None


def test_env_overrides(clean_env) -> None:
    clean_env.setenv("PORT", "8080")
    clean_env.setenv("DATABASE_URL", "postgresql://u:p@db/orders")
    clean_env.setenv("QUEUE_BACKEND", "PubSub")
    clean_env.setenv("GOOGLE_CLOUD_PROJECT", "proj-1")
    clean_env.setenv("WORKER_CONCURRENCY", "4")
    clean_env.setenv("SETTLE_DELAY_S", "0")
    clean_env.setenv("ROUTER_SEED", "99")
    clean_env.setenv("LOG_LEVEL", "debug")

    cfg = EngineConfig.from_env()
    assert cfg.port == 8080
    assert cfg.repository_backend == "postgres"
    assert cfg.queue_backend == "pubsub"
    assert cfg.pubsub_project_id == "proj-1"
    assert cfg.worker_concurrency == 4
    assert cfg.settle_delay_s == 0.0
    assert cfg.router_seed == 99
    assert cfg.log_level == "DEBUG"


def test_unparseable_numbers_fall_back_to_defaults(clean_env) -> None:
    clean_env.setenv("PORT", "not-a-port")
    clean_env.setenv("QUOTE_LATENCY_S", "fast")
    cfg = EngineConfig.from_env()
    assert cfg.port == 3000
    assert cfg.quote_latency_s == 0.2


def test_unknown_backend_is_rejected(clean_env) -> None:
    clean_env.setenv("QUEUE_BACKEND", "redis")
    with pytest.raises(ValueError):
        EngineConfig.from_env()


def test_pubsub_requires_project() -> None:
    with pytest.raises(ValueError):
        EngineConfig(queue_backend="pubsub")


def test_concurrency_and_delays_are_validated() -> None:
    with pytest.raises(ValueError):
        EngineConfig(worker_concurrency=0)
    with pytest.raises(ValueError):
        EngineConfig(settle_delay_s=-1)
