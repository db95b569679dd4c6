from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from typing import Any, Optional

from order_engine.common.keyed_lock import KeyedLock
from order_engine.common.logging import log_event
from order_engine.execution.models import Order
from order_engine.messaging.envelope import JobEnvelope
from order_engine.messaging.job_queue import JobHandler, QueueClosedError, run_job

logger = logging.getLogger(__name__)


def _default_publisher_client() -> Any:
    try:
        from google.cloud import pubsub_v1  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "google-cloud-pubsub is required to use PubSubJobQueue. "
            "Install with: pip install google-cloud-pubsub"
        ) from e
    return pubsub_v1.PublisherClient()


def _default_subscriber_client() -> Any:
    try:
        from google.cloud import pubsub_v1  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "google-cloud-pubsub is required to use PubSubJobQueue. "
            "Install with: pip install google-cloud-pubsub"
        ) from e
    return pubsub_v1.SubscriberClient()


def _flow_control(max_messages: int) -> Any:
    from google.cloud.pubsub_v1 import types  # type: ignore

    return types.FlowControl(max_messages=int(max_messages))


class PubSubJobQueue:
    """
    Durable job queue on Google Pub/Sub (at-least-once delivery).

    - `enqueue` publishes a `JobEnvelope` and returns once the server has acked the publish.
    - `start` opens a streaming pull with `max_messages=concurrency`; each callback
      (on a Pub/Sub thread) hands the job to the event loop and blocks until it finishes,
      then acks. The handler never raises, so every delivered job is acked once.
    - Malformed envelopes are logged and acked; there is no dead-letter path.

    Clients are lazily created so the package imports without Pub/Sub credentials;
    tests inject fakes.
    """

    name = "pubsub"

    def __init__(
        self,
        *,
        project_id: str,
        topic_id: str,
        subscription_id: str,
        concurrency: int = 10,
        publish_timeout_s: float = 30.0,
        publisher_client: Any = None,
        subscriber_client: Any = None,
    ) -> None:
        self.project_id = str(project_id)
        self.topic_id = str(topic_id)
        self.subscription_id = str(subscription_id)
        self.concurrency = max(1, int(concurrency))
        self.publish_timeout_s = float(publish_timeout_s)

        self._publisher = publisher_client if publisher_client is not None else _default_publisher_client()
        self._subscriber = subscriber_client if subscriber_client is not None else _default_subscriber_client()
        self._topic_path = self._publisher.topic_path(self.project_id, self.topic_id)
        self._subscription_path = self._subscriber.subscription_path(self.project_id, self.subscription_id)

        self._locks = KeyedLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handler: Optional[JobHandler] = None
        self._streaming_future: Any = None
        self._inflight: set[Future] = set()
        self._closed = False

    @property
    def topic_path(self) -> str:
        return self._topic_path

    @property
    def subscription_path(self) -> str:
        return self._subscription_path

    @property
    def is_running(self) -> bool:
        return self._streaming_future is not None and not self._closed

    async def start(self, handler: JobHandler) -> None:
        if self._streaming_future is not None:
            raise RuntimeError("queue already started")
        if self._closed:
            raise QueueClosedError("queue is closed")
        self._loop = asyncio.get_running_loop()
        self._handler = handler
        self._streaming_future = self._subscriber.subscribe(
            self._subscription_path,
            callback=self._on_message,
            flow_control=_flow_control(self.concurrency),
        )
        log_event(
            logger,
            "queue.started",
            queue=self.name,
            subscription=self._subscription_path,
            concurrency=self.concurrency,
        )

    async def enqueue(self, order: Order) -> None:
        if self._closed:
            raise QueueClosedError("queue is closed; not accepting new orders")
        envelope = JobEnvelope.for_order(order)
        future = self._publisher.publish(
            self._topic_path,
            envelope.to_bytes(),
            order_id=order.id,
            job_type=envelope.job_type,
        )
        message_id = await asyncio.to_thread(future.result, timeout=self.publish_timeout_s)
        log_event(logger, "queue.enqueued", queue=self.name, order_id=order.id, message_id=str(message_id))

    def _on_message(self, message: Any) -> None:
        """Pub/Sub callback thread."""
        try:
            order = JobEnvelope.from_bytes(message.data).order()
        except Exception as e:
            log_event(
                logger,
                "queue.malformed_job",
                severity="ERROR",
                queue=self.name,
                message_id=str(getattr(message, "message_id", "")),
                error=f"{type(e).__name__}: {e}",
            )
            message.ack()
            return

        loop = self._loop
        handler = self._handler
        if loop is None or handler is None or loop.is_closed():
            message.nack()
            return

        fut = asyncio.run_coroutine_threadsafe(
            run_job(handler, order, locks=self._locks, queue_name=self.name),
            loop,
        )
        self._inflight.add(fut)
        fut.add_done_callback(self._inflight.discard)
        try:
            fut.result()
        except Exception:
            # Loop went away mid-job; let Pub/Sub redeliver.
            message.nack()
            return
        message.ack()

    async def close(self) -> None:
        """
        Stop pulling, let in-flight jobs finish, release the clients.
        """
        if self._closed:
            return
        self._closed = True
        if self._streaming_future is not None:
            self._streaming_future.cancel()
            try:
                await asyncio.to_thread(self._streaming_future.result, timeout=30.0)
            except Exception:
                # Cancelled streams may surface their cancellation here; shutdown continues.
                pass
        pending = [asyncio.wrap_future(f) for f in list(self._inflight)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for client in (self._subscriber, self._publisher):
            try:
                transport = getattr(client, "transport", None)
                if transport is not None and hasattr(transport, "close"):
                    transport.close()
                elif hasattr(client, "close"):
                    client.close()
            except Exception:
                # Never raise during shutdown.
                pass
        log_event(logger, "queue.closed", queue=self.name)
