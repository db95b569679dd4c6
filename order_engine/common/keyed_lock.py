from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped when no task holds
    or waits on it (so the map never grows with finished order ids).
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        k = str(key)
        lock = self._locks.get(k)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[k] = lock
        self._refs[k] = self._refs.get(k, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[k] -= 1
            if self._refs[k] <= 0:
                self._refs.pop(k, None)
                self._locks.pop(k, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(str(key))
        return bool(lock is not None and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
