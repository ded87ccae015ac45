"""Shared key-value store used by the rate limiter, response cache and history.

Two backends:
  - RedisStore: production backend, shared by every gateway process so
    quotas and cache entries are not fragmented per instance. Multi-step
    operations run as Lua scripts, so each one is atomic on the server.
  - MemoryStore: in-process backend for local development and tests
    (single process only). Keys are bounded with LRU eviction.

Backends raise InternalDegradedError when the store cannot be reached;
callers decide how to degrade.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatgate.gateway.errors import InternalDegradedError

logger = logging.getLogger(__name__)


@dataclass
class WindowState:
    """Outcome of one sliding-window admission attempt."""

    allowed: bool
    count: int  # Entries in the window after this attempt
    oldest: float  # Score of the oldest entry still in the window


class KeyValueStore(ABC):
    """Primitives the gateway components need from a shared store."""

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """SET NX with expiry. True when the key was created."""

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: str) -> bool:
        """Delete only when the stored value matches (owner-checked release)."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def sliding_window_hit(
        self,
        key: str,
        now: float,
        window_seconds: float,
        limit: int,
        member: str,
        expire_seconds: int,
    ) -> WindowState:
        """Prune entries older than the window, count, and record when under limit.

        All three steps happen as one atomic operation.
        """

    @abstractmethod
    async def list_push(self, key: str, values: list[str], ttl_seconds: int, max_len: int) -> int:
        """Append values, keep the newest ``max_len``, refresh expiry. Returns new length."""

    @abstractmethod
    async def list_tail(self, key: str, limit: int) -> list[str]:
        """Last ``limit`` items, oldest first."""

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local expire = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
    redis.call('ZADD', key, now, member)
    count = count + 1
    allowed = 1
end
redis.call('EXPIRE', key, expire)

local oldest = now
local head = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if head[2] then
    oldest = tonumber(head[2])
end
return {allowed, count, tostring(oldest)}
"""

_COMPARE_AND_DELETE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


@contextmanager
def _degraded(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        raise InternalDegradedError(f"Redis {operation} failed: {e}") from e


class RedisStore(KeyValueStore):
    """Redis-backed store (redis.asyncio)."""

    def __init__(self, url: str, key_prefix: str = "chatgate:", client: Any = None):
        self._client = client or redis.from_url(url, decode_responses=True)
        self._prefix = key_prefix
        self._window_script = self._client.register_script(_SLIDING_WINDOW_LUA)
        self._release_script = self._client.register_script(_COMPARE_AND_DELETE_LUA)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.error("Redis health check failed: %s", e)
            return False

    async def get(self, key: str) -> str | None:
        with _degraded("get"):
            return await self._client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with _degraded("set"):
            await self._client.set(self._key(key), value, ex=max(int(ttl_seconds), 1))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with _degraded("set_if_absent"):
            created = await self._client.set(self._key(key), value, ex=max(int(ttl_seconds), 1), nx=True)
        return bool(created)

    async def delete(self, key: str) -> bool:
        with _degraded("delete"):
            return bool(await self._client.delete(self._key(key)))

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        with _degraded("delete_if_equals"):
            result = await self._release_script(keys=[self._key(key)], args=[expected])
        return bool(result)

    async def exists(self, key: str) -> bool:
        with _degraded("exists"):
            return bool(await self._client.exists(self._key(key)))

    async def sliding_window_hit(
        self,
        key: str,
        now: float,
        window_seconds: float,
        limit: int,
        member: str,
        expire_seconds: int,
    ) -> WindowState:
        with _degraded("sliding_window_hit"):
            allowed, count, oldest = await self._window_script(
                keys=[self._key(key)],
                args=[repr(now), repr(float(window_seconds)), limit, member, max(int(expire_seconds), 1)],
            )
        return WindowState(allowed=bool(int(allowed)), count=int(count), oldest=float(oldest))

    async def list_push(self, key: str, values: list[str], ttl_seconds: int, max_len: int) -> int:
        if not values:
            return 0
        full_key = self._key(key)
        with _degraded("list_push"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.rpush(full_key, *values)
                pipe.ltrim(full_key, -max_len, -1)
                pipe.expire(full_key, max(int(ttl_seconds), 1))
                length, _, _ = await pipe.execute()
        return min(int(length), max_len)

    async def list_tail(self, key: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        with _degraded("list_tail"):
            return list(await self._client.lrange(self._key(key), -limit, -1))

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    value: Any
    expires_at: float | None = None


@dataclass
class _Window:
    entries: list[tuple[float, str]] = field(default_factory=list)


class MemoryStore(KeyValueStore):
    """Single-process store with TTL and LRU bounding.

    Not thread-safe. Every operation runs under one asyncio.Lock and never
    awaits while holding it, so each call is atomic within the event loop.
    """

    def __init__(self, max_keys: int = 10_000, clock: Callable[[], float] = time.time):
        self.max_keys = max_keys
        self._clock = clock
        self._data: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return entry

    def _put(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._data[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)
        self._data.move_to_end(key)
        while len(self._data) > self.max_keys:
            evicted, _ = self._data.popitem(last=False)
            logger.debug("MemoryStore evicted %s (LRU)", evicted)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, str):
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._put(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl_seconds)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry.value != expected:
                return False
            del self._data[key]
            return True

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def sliding_window_hit(
        self,
        key: str,
        now: float,
        window_seconds: float,
        limit: int,
        member: str,
        expire_seconds: int,
    ) -> WindowState:
        async with self._lock:
            entry = self._live(key)
            window = entry.value if entry is not None and isinstance(entry.value, _Window) else _Window()

            cutoff = now - window_seconds
            window.entries = [(ts, m) for ts, m in window.entries if ts > cutoff]

            allowed = len(window.entries) < limit
            if allowed:
                window.entries.append((now, member))
                window.entries.sort(key=lambda e: e[0])

            self._put(key, window, expire_seconds)
            oldest = window.entries[0][0] if window.entries else now
            return WindowState(allowed=allowed, count=len(window.entries), oldest=oldest)

    async def list_push(self, key: str, values: list[str], ttl_seconds: int, max_len: int) -> int:
        if not values:
            return 0
        async with self._lock:
            entry = self._live(key)
            items: list[str] = entry.value if entry is not None and isinstance(entry.value, list) else []
            items.extend(values)
            del items[:-max_len]
            self._put(key, items, ttl_seconds)
            return len(items)

    async def list_tail(self, key: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        async with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, list):
                return []
            return list(entry.value[-limit:])


def create_store(backend: str, redis_url: str = "", max_keys: int = 10_000) -> KeyValueStore:
    """Factory: build the configured store backend."""
    if backend == "redis":
        return RedisStore(redis_url)
    if backend == "memory":
        return MemoryStore(max_keys=max_keys)
    raise ValueError(f"Unknown store backend: {backend}")
