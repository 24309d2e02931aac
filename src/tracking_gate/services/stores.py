"""Shared state backing replay protection and rate limiting.

Both the nonce registry and the sliding-window counters must be visible to
every server instance, so production deployments use the Redis variants. The
in-memory variants serve tests and single-process development; they are
atomic only because no await happens between their check and their write.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tracking_gate.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a store round trip, converting timeouts and Redis errors.

    Raises:
        StoreUnavailable: If the call exceeds `timeout` seconds or the store
            reports a connection-level failure.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as err:
        raise StoreUnavailable(f"{operation} timed out after {timeout}s") from err
    except RedisError as err:
        raise StoreUnavailable(f"{operation} failed: {err}") from err


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


# --- Nonce registry -------------------------------------------------------------


class NonceStore(Protocol):
    """Registry of used nonces with atomic check-and-set."""

    async def add_if_absent(self, key: str, ttl_ms: int) -> bool:
        """Record `key` for `ttl_ms`; return False if it was already present."""
        ...

    async def contains(self, key: str) -> bool:
        ...


class InMemoryNonceStore:
    """Bounded process-local nonce registry.

    Entries are kept in creation order. Only expired entries are ever evicted;
    when the registry is full of live entries it refuses new ones instead of
    silently dropping replay protection.
    """

    def __init__(
        self,
        max_entries: int = 100_000,
        clock: Callable[[], int] = _monotonic_ms,
    ) -> None:
        self._entries: OrderedDict[str, int] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def add_if_absent(self, key: str, ttl_ms: int) -> bool:
        now = self._clock()
        expires_at = self._entries.get(key)
        if expires_at is not None:
            if expires_at > now:
                return False
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            self._evict_expired(now)
        if len(self._entries) >= self._max_entries:
            raise StoreUnavailable("Nonce cache full of unexpired entries")
        self._entries[key] = now + ttl_ms
        return True

    async def contains(self, key: str) -> bool:
        expires_at = self._entries.get(key)
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            del self._entries[key]
            return False
        return True

    def clear(self) -> None:
        self._entries.clear()

    def _evict_expired(self, now: int) -> None:
        # TTLs are not uniform, so an expired entry may sit behind a live one.
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Evicted %d expired nonces", len(expired))


class RedisNonceStore:
    """Nonce registry shared by all instances through Redis ``SET NX PX``."""

    def __init__(self, redis: Redis, *, key_prefix: str = "") -> None:
        self._redis = redis
        self._prefix = key_prefix

    async def add_if_absent(self, key: str, ttl_ms: int) -> bool:
        created = await self._redis.set(f"{self._prefix}{key}", "1", nx=True, px=max(1, ttl_ms))
        return bool(created)

    async def contains(self, key: str) -> bool:
        return bool(await self._redis.exists(f"{self._prefix}{key}"))


# --- Sliding-window counters ----------------------------------------------------


class SlidingWindowStore(Protocol):
    """Per-key log of request timestamps."""

    async def hit(self, key: str, now_ms: int, window_ms: int) -> int:
        """Atomically expire, count, record and refresh; return the count
        including the request being recorded."""
        ...

    async def count(self, key: str, now_ms: int, window_ms: int) -> int:
        ...

    async def reset(self, key: str) -> None:
        ...


class InMemorySlidingWindowStore:
    """Process-local sliding-window log.

    A key is dropped as soon as its log empties. Keys that are never touched
    again are released by a sweep that `hit` runs at most once per
    `sweep_interval_ms`, using the window each key was last recorded with.
    """

    def __init__(self, sweep_interval_ms: int = 60_000) -> None:
        self._windows: dict[str, tuple[int, deque[int]]] = {}
        self._sweep_interval_ms = sweep_interval_ms
        self._last_sweep: int | None = None

    def __len__(self) -> int:
        return len(self._windows)

    async def hit(self, key: str, now_ms: int, window_ms: int) -> int:
        self._maybe_sweep(now_ms)
        entry = self._windows.get(key)
        log = entry[1] if entry is not None else deque()
        self._trim(log, now_ms - window_ms)
        log.append(now_ms)
        self._windows[key] = (window_ms, log)
        return len(log)

    async def count(self, key: str, now_ms: int, window_ms: int) -> int:
        entry = self._windows.get(key)
        if entry is None:
            return 0
        log = entry[1]
        self._trim(log, now_ms - window_ms)
        if not log:
            del self._windows[key]
        return len(log)

    async def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def _maybe_sweep(self, now_ms: int) -> None:
        if self._last_sweep is None:
            self._last_sweep = now_ms
            return
        if now_ms - self._last_sweep < self._sweep_interval_ms:
            return
        self._last_sweep = now_ms
        stale = []
        for key, (window_ms, log) in self._windows.items():
            self._trim(log, now_ms - window_ms)
            if not log:
                stale.append(key)
        for key in stale:
            del self._windows[key]
        if stale:
            logger.debug("Released %d idle rate-limit windows", len(stale))

    @staticmethod
    def _trim(log: deque[int], window_start: int) -> None:
        while log and log[0] < window_start:
            log.popleft()


class RedisSlidingWindowStore:
    """Sliding-window log in a Redis sorted set, updated in one MULTI/EXEC."""

    def __init__(self, redis: Redis, *, key_prefix: str = "") -> None:
        self._redis = redis
        self._prefix = key_prefix

    async def hit(self, key: str, now_ms: int, window_ms: int) -> int:
        redis_key = f"{self._prefix}{key}"
        member = f"{now_ms}-{secrets.token_hex(4)}"
        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, "-inf", f"({now_ms - window_ms}")
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {member: now_ms})
        pipe.pexpire(redis_key, window_ms)
        results: list[Any] = await pipe.execute()
        return int(results[1]) + 1

    async def count(self, key: str, now_ms: int, window_ms: int) -> int:
        return int(await self._redis.zcount(f"{self._prefix}{key}", now_ms - window_ms, "+inf"))

    async def reset(self, key: str) -> None:
        await self._redis.delete(f"{self._prefix}{key}")
