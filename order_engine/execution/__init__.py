"""
Order execution.

This package owns:
- the order model and its status lifecycle
- venue quoting/execution (simulated DEX router)
- the per-order execution pipeline run by queue workers
- intake (request path) and the queue facade used by the transport
"""

from .models import ExecutionResult, Order, OrderStatus, Quote  # noqa: F401
