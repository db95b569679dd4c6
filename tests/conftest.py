from __future__ import annotations

import logging

import pytest

from order_engine.messaging.subscribers import SubscriberRegistry
from order_engine.persistence.order_repository import InMemoryOrderRepository
from tests.fakes import fast_router


@pytest.fixture
def router():
    return fast_router()


@pytest.fixture
def registry() -> SubscriberRegistry:
    return SubscriberRegistry()


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture(autouse=True)
def _quiet_root_logger():
    # Tests that call init_structured_logging replace root handlers; restore them afterwards.
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
