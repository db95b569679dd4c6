"""
order_engine package

Market-order execution engine: intake, asynchronous routing across simulated
DEX venues, simulated execution, and ordered progress notifications streamed to
one live subscriber per order.
"""

__version__ = "0.1.0"
