"""
Job queue and subscriber messaging.

This package provides:
- A JSON job envelope (`JobEnvelope`)
- In-memory and Google Pub/Sub job queues
- The per-order subscriber registry and the notification schema it sends
"""

from .envelope import JobEnvelope
from .job_queue import InMemoryJobQueue, JobQueue, QueueClosedError
from .notifications import OrderNotification
from .subscribers import NotificationSink, SubscriberRegistry

__all__ = [
    "JobEnvelope",
    "InMemoryJobQueue",
    "JobQueue",
    "QueueClosedError",
    "OrderNotification",
    "NotificationSink",
    "SubscriberRegistry",
]
