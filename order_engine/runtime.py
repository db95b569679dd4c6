from __future__ import annotations

import logging
from typing import Optional

from order_engine.common.config import EngineConfig
from order_engine.common.logging import log_event
from order_engine.execution.dex_router import MockDexRouter
from order_engine.execution.intake import OrderIntake
from order_engine.execution.order_queue import OrderQueue
from order_engine.execution.pipeline import ExecutionPipeline
from order_engine.messaging.job_queue import InMemoryJobQueue, JobQueue
from order_engine.messaging.subscribers import SubscriberRegistry
from order_engine.persistence.active_order_cache import ActiveOrderCache, InMemoryActiveOrderCache
from order_engine.persistence.order_repository import InMemoryOrderRepository, OrderRepository

logger = logging.getLogger(__name__)


class OrderEngine:
    """
    Owns every long-lived component and their start/stop order.

    Constructed once by the process entry point (or a test) and passed by
    reference to the HTTP app.
    """

    def __init__(
        self,
        *,
        config: EngineConfig,
        repository: OrderRepository,
        cache: ActiveOrderCache,
        job_queue: JobQueue,
        router: Optional[MockDexRouter] = None,
        registry: Optional[SubscriberRegistry] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.cache = cache
        self.registry = registry or SubscriberRegistry()
        self.router = router or MockDexRouter(
            seed=config.router_seed,
            quote_latency_s=config.quote_latency_s,
            execute_latency_s=config.execute_latency_s,
        )
        self.pipeline = ExecutionPipeline(
            router=self.router,
            registry=self.registry,
            repository=self.repository,
            cache=self.cache,
            settle_delay_s=config.settle_delay_s,
            active_order_ttl_s=config.active_order_ttl_s,
        )
        self.queue = OrderQueue(job_queue=job_queue, pipeline=self.pipeline, registry=self.registry)
        self.intake = OrderIntake(
            repository=self.repository,
            cache=self.cache,
            queue=self.queue,
            active_order_ttl_s=config.active_order_ttl_s,
        )
        self._started = False

    @staticmethod
    def from_config(config: EngineConfig) -> "OrderEngine":
        repository: OrderRepository
        if config.repository_backend == "postgres":
            from order_engine.persistence.order_repository import PostgresOrderRepository

            repository = PostgresOrderRepository(config.database_url, max_connections=config.db_pool_max)
        else:
            repository = InMemoryOrderRepository()

        cache: ActiveOrderCache
        if config.cache_backend == "firestore":
            from order_engine.persistence.active_order_cache import FirestoreActiveOrderCache

            cache = FirestoreActiveOrderCache()
        else:
            cache = InMemoryActiveOrderCache()

        job_queue: JobQueue
        if config.queue_backend == "pubsub":
            from order_engine.messaging.pubsub_queue import PubSubJobQueue

            job_queue = PubSubJobQueue(
                project_id=str(config.pubsub_project_id),
                topic_id=config.pubsub_topic_id,
                subscription_id=config.pubsub_subscription_id,
                concurrency=config.worker_concurrency,
            )
        else:
            job_queue = InMemoryJobQueue(concurrency=config.worker_concurrency)

        return OrderEngine(config=config, repository=repository, cache=cache, job_queue=job_queue)

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        initialize = getattr(self.repository, "initialize", None)
        if callable(initialize):
            await initialize()
        await self.queue.start()
        self._started = True
        log_event(
            logger,
            "engine.started",
            repository=self.config.repository_backend,
            cache=self.config.cache_backend,
            queue=self.config.queue_backend,
            concurrency=self.config.worker_concurrency,
        )

    async def stop(self) -> None:
        """Drain the queue first; storage closes only after in-flight orders finish."""
        if not self._started:
            return
        log_event(logger, "engine.stopping")
        try:
            await self.queue.close()
        finally:
            await self.cache.close()
            await self.repository.close()
            self._started = False
        log_event(logger, "engine.stopped")

    async def health(self) -> dict[str, bool]:
        return {
            "database": await self.repository.health_check(),
            "cache": await self.cache.health_check(),
            "queue": self.queue.is_running,
        }
