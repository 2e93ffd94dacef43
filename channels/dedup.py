"""
Idempotent inbound gate — drops provider redeliveries before any business logic.

The provider delivers webhooks at-least-once. Each provider message id is
marked in a short-lived cache on first sight; later sights inside the TTL
are skipped. The check-and-mark is a single atomic operation so two
workers racing on the same id cannot both proceed.

Backends:
  InMemoryDedupCache — single process (dev/tests)
  RedisDedupCache    — SET key value NX EX ttl
"""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import structlog

from config.settings import DedupConfig

logger = structlog.get_logger()

KEY_PREFIX = "processed_msg:"
DEFAULT_TTL_SECONDS = 24 * 3600


class DedupCache(ABC):
    """Existence cache with per-key expiry."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically write the key if it is missing. True when this call wrote it."""
        ...

    async def close(self) -> None:
        pass


class InMemoryDedupCache(DedupCache):

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _alive(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry[1] <= self._clock():
            del self._entries[key]
            return False
        return True

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._alive(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._alive(key):
                return False
            self._entries[key] = (value, self._clock() + ttl_seconds)
            return True

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, (_, exp) in self._entries.items() if exp <= now]
        for k in stale:
            del self._entries[k]
        return len(stale)


class RedisDedupCache(DedupCache):

    def __init__(self, redis_url: str = "redis://localhost:6379", client=None):
        self._redis_url = redis_url
        self._redis = client

    async def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            logger.info("redis_dedup_connected", url=self._redis_url)
        return self._redis

    async def exists(self, key: str) -> bool:
        client = await self._client()
        return bool(await client.exists(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        client = await self._client()
        await client.set(key, value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        client = await self._client()
        return bool(await client.set(key, value, ex=ttl_seconds, nx=True))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()


class InboundGate:
    """should_process() returns True exactly once per provider id within the TTL."""

    def __init__(self, cache: DedupCache, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def should_process(self, provider_message_id: str) -> bool:
        if not provider_message_id:
            logger.warning("inbound_without_provider_id")
            return True
        first_sight = await self.cache.set_if_absent(
            KEY_PREFIX + provider_message_id, "1", self.ttl_seconds,
        )
        if not first_sight:
            logger.info("inbound_duplicate_skipped", message_id=provider_message_id)
        return first_sight


def create_inbound_gate(config: Optional[DedupConfig] = None) -> InboundGate:
    config = config or DedupConfig()
    if config.backend == "redis":
        cache: DedupCache = RedisDedupCache(redis_url=config.redis_url)
    else:
        cache = InMemoryDedupCache()
    return InboundGate(cache, ttl_seconds=config.ttl_hours * 3600)
