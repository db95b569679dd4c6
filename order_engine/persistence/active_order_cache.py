from __future__ import annotations

import asyncio
import heapq
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from order_engine.execution.models import Order
from order_engine.persistence.firestore import get_firestore_client, with_firestore_retry


class ActiveOrderCache(Protocol):
    """
    Short-lived copy of orders being worked, read by the request layer before
    falling back to the repository.
    """

    async def set(self, order: Order, ttl_seconds: int) -> None: ...

    async def get(self, order_id: str) -> Optional[Order]: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


class InMemoryActiveOrderCache:
    """
    Process-local cache. Expired entries are evicted on read and swept on
    every write, so ids that are never read back do not pile up.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Order]] = {}
        # (expires_at, order_id); stale pairs from overwritten entries are skipped on pop.
        self._expiry_heap: list[tuple[float, str]] = []

    def _sweep(self, now: float) -> None:
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            expires_at, order_id = heapq.heappop(self._expiry_heap)
            entry = self._entries.get(order_id)
            if entry is not None and entry[0] == expires_at:
                del self._entries[order_id]

    async def set(self, order: Order, ttl_seconds: int) -> None:
        now = self._clock()
        self._sweep(now)
        expires_at = now + max(0, int(ttl_seconds))
        self._entries[order.id] = (expires_at, order)
        heapq.heappush(self._expiry_heap, (expires_at, order.id))

    async def get(self, order_id: str) -> Optional[Order]:
        entry = self._entries.get(str(order_id))
        if entry is None:
            return None
        expires_at, order = entry
        if self._clock() >= expires_at:
            self._entries.pop(str(order_id), None)
            return None
        return order

    def __len__(self) -> int:
        return len(self._entries)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._entries.clear()
        self._expiry_heap.clear()


class FirestoreActiveOrderCache:
    """
    Storage:
      {collection}/{order_id} = {"order": <wire dict>, "expires_at": <utc datetime>}

    Expired documents read as absent (a Firestore TTL policy on `expires_at`
    reclaims them server-side).
    """

    def __init__(self, *, client: Any = None, collection: str = "active_orders", project_id: Optional[str] = None) -> None:
        self._db = client if client is not None else get_firestore_client(project_id=project_id)
        self._collection = str(collection).strip() or "active_orders"

    def _ref(self, order_id: str):
        return self._db.collection(self._collection).document(str(order_id))

    async def set(self, order: Order, ttl_seconds: int) -> None:
        ref = self._ref(order.id)
        doc = {
            "order": order.to_dict(),
            "expires_at": datetime.now(timezone.utc) + timedelta(seconds=max(0, int(ttl_seconds))),
        }
        await asyncio.to_thread(with_firestore_retry, lambda: ref.set(doc))

    async def get(self, order_id: str) -> Optional[Order]:
        ref = self._ref(order_id)
        snap = await asyncio.to_thread(with_firestore_retry, lambda: ref.get())
        if not snap.exists:
            return None
        data = snap.to_dict() or {}
        expires_at = data.get("expires_at")
        if isinstance(expires_at, datetime):
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= datetime.now(timezone.utc):
                return None
        payload = data.get("order")
        if not isinstance(payload, dict):
            return None
        return Order.from_dict(payload)

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(lambda: list(self._db.collection(self._collection).limit(1).stream()))
            return True
        except Exception:
            return False

    async def close(self) -> None:
        close = getattr(self._db, "close", None)
        if callable(close):
            await asyncio.to_thread(close)
