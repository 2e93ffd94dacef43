"""
Per-key serialization for session mutations.

Two operations on the same customer never interleave; different customers
never wait on each other. Lock objects are reference counted and dropped
once nobody holds or waits on them, so the table stays bounded by the
number of customers currently being worked on.
"""
from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Iterable


class KeyedLock:

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._checkout(key)
        try:
            async with lock:
                yield
        finally:
            self._checkin(key)

    @asynccontextmanager
    async def lock_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Hold several keys at once. Sorted acquisition keeps batches deadlock-free."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.lock(key))
            yield

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
