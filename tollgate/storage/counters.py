"""
Counter store for the cost circuit breaker.

Counters are floats keyed by scope and time bucket, created on first
increment and expiring on their own. Increments must be atomic across
processes, so production uses Redis INCRBYFLOAT; the in-memory store is for
development and tests.
"""

import asyncio
import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CounterStoreError(Exception):
    """Counter store unreachable or returned an unusable value."""

    pass


class CounterStore(ABC):
    """Atomic float counters with expiry."""

    @abstractmethod
    async def get_float(self, key: str) -> float:
        """Current value, 0.0 when the key does not exist."""

    @abstractmethod
    async def incr_float(self, key: str, amount: float, ttl_seconds: int) -> float:
        """Atomically add amount and (re)set the key's expiry. Returns the new value."""

    @abstractmethod
    async def scan_keys(self, pattern: str) -> list[str]:
        """Keys matching a glob-style pattern."""

    async def close(self) -> None:
        return None


class RedisCounterStore(CounterStore):
    """Redis-backed counters (INCRBYFLOAT + EXPIRE in one MULTI/EXEC)."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout_seconds: float = 0.5) -> "RedisCounterStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=socket_timeout_seconds,
        )
        return cls(client)

    async def get_float(self, key: str) -> float:
        try:
            value = await self._client.get(key)
        except redis.RedisError as e:
            raise CounterStoreError(f"GET {key} failed: {e}") from e

        if value is None:
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise CounterStoreError(f"Counter {key} holds a non-numeric value") from e

    async def incr_float(self, key: str, amount: float, ttl_seconds: int) -> float:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incrbyfloat(key, amount)
                pipe.expire(key, ttl_seconds)
                new_value, _ = await pipe.execute()
        except redis.RedisError as e:
            raise CounterStoreError(f"INCRBYFLOAT {key} failed: {e}") from e
        return float(new_value)

    async def scan_keys(self, pattern: str) -> list[str]:
        try:
            return [key async for key in self._client.scan_iter(match=pattern, count=100)]
        except redis.RedisError as e:
            raise CounterStoreError(f"SCAN {pattern} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis counter store disconnected")


class InMemoryCounterStore(CounterStore):
    """
    Process-local counters.

    Only correct for a single process. Expiry is evaluated against the
    injected clock on read, and expired keys are swept on write at most once
    per PURGE_INTERVAL_SECONDS.
    """

    PURGE_INTERVAL_SECONDS = 60.0

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: dict[str, tuple[float, float]] = {}
        self._lock = asyncio.Lock()
        self._next_purge_at = clock() + self.PURGE_INTERVAL_SECONDS

    def _live(self, key: str) -> float | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def _purge_expired(self) -> None:
        now = self._clock()
        if now < self._next_purge_at:
            return
        expired = [key for key, (_, expires_at) in self._values.items() if now >= expires_at]
        for key in expired:
            del self._values[key]
        self._next_purge_at = now + self.PURGE_INTERVAL_SECONDS

    async def get_float(self, key: str) -> float:
        async with self._lock:
            value = self._live(key)
            return value if value is not None else 0.0

    async def incr_float(self, key: str, amount: float, ttl_seconds: int) -> float:
        async with self._lock:
            new_value = (self._live(key) or 0.0) + amount
            self._values[key] = (new_value, self._clock() + ttl_seconds)
            self._purge_expired()
            return new_value

    async def scan_keys(self, pattern: str) -> list[str]:
        async with self._lock:
            return [
                key
                for key in list(self._values)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            ]


def build_counter_store(url: str | None, socket_timeout_seconds: float = 0.5) -> CounterStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    if url:
        logger.info("Using Redis counter store")
        return RedisCounterStore.from_url(url, socket_timeout_seconds=socket_timeout_seconds)

    logger.warning("Using in-memory counter store (single process only)")
    return InMemoryCounterStore()
