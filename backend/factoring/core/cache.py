"""Cache and pub/sub fabric.

Services never reach for a module-level client. They receive a
``CacheBackend`` (installed on ``app.state.cache`` by the application
lifespan, or on the arq context by the worker) and talk to it through the
small set of primitives below: string keys with TTL, hashes, sorted sets,
lists, pub/sub channels and the NX/compare-and-delete pair used by locks.

Three implementations exist:

* ``RedisCache`` wraps ``redis.asyncio``, the client arq already runs on.
* ``InMemoryCache`` keeps everything in the process and honours TTLs; the
  test-suite and single-process deployments use it.
* ``NullCache`` disables caching: reads always miss, writes are dropped, but
  lock acquisition still works inside the process.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from threading import Lock
from typing import Any, TypeVar

from fastapi import Request
from redis.asyncio import Redis
from redis.exceptions import RedisError

from factoring.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Deletes the lock key only when it still holds the caller's token.
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

SCAN_BATCH_SIZE = 100


class CacheUnavailable(Exception):
    """The cache backend could not serve the request."""


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(value: Any) -> str:
    """Serialize a cache payload to JSON."""
    return json.dumps(value, default=_json_default, sort_keys=True)


def loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class CacheBackend(ABC):
    """Async key-value, sorted-set, list and pub/sub primitives."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool: ...

    @abstractmethod
    async def compare_and_delete(self, key: str, token: str) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]: ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool: ...

    @abstractmethod
    async def ttl(self, key: str) -> int: ...

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def incrbyfloat(self, key: str, amount: float) -> float: ...

    @abstractmethod
    async def hset(self, key: str, mapping: dict[str, Any]) -> None: ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]: ...

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def zadd(self, key: str, mapping: dict[str, float]) -> int: ...

    @abstractmethod
    async def zincrby(self, key: str, amount: float, member: str) -> float: ...

    @abstractmethod
    async def zscore(self, key: str, member: str) -> float | None: ...

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    @abstractmethod
    async def zrank(self, key: str, member: str) -> int | None: ...

    @abstractmethod
    async def zrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]: ...

    @abstractmethod
    async def zrevrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]: ...

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]: ...

    @abstractmethod
    async def lpush(self, key: str, *values: str) -> int: ...

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> None: ...

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> list[str]: ...

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int: ...

    @abstractmethod
    def subscribe(self, *channels: str) -> AsyncIterator[tuple[str, str]]: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern."""
        matched = await self.keys(pattern)
        deleted = 0
        for i in range(0, len(matched), SCAN_BATCH_SIZE):
            deleted += await self.delete(*matched[i : i + SCAN_BATCH_SIZE])
        return deleted

    async def get_json(self, key: str) -> Any:
        return loads(await self.get(key))

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        await self.set(key, dumps(value), ttl)

    async def publish_json(self, channel: str, payload: Any) -> int:
        return await self.publish(channel, dumps(payload))


def _slice(items: list[Any], start: int, stop: int) -> list[Any]:
    """Apply Redis inclusive/negative index semantics to a list."""
    n = len(items)
    if start < 0:
        start += n
    if stop < 0:
        stop += n
    start = max(start, 0)
    if start > stop:
        return []
    return items[start : stop + 1]


class InMemoryCache(CacheBackend):
    """Process-local backend with TTLs, sorted sets, lists and pub/sub."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}
        self._lock = Lock()
        self._subscribers: dict[str, list[asyncio.Queue[tuple[str, str]]]] = defaultdict(list)
        self.published: list[tuple[str, str]] = []

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= time.monotonic():
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._data

    def _put(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        self._data[key] = value
        if ttl_seconds:
            self._expires[key] = time.monotonic() + ttl_seconds
        else:
            self._expires.pop(key, None)

    def _container(self, key: str, factory: type) -> Any:
        if not self._alive(key):
            self._data[key] = factory()
        return self._data[key]

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        if not self._alive(key):
            return []
        return sorted(self._data[key].items(), key=lambda item: (item[1], item[0]))

    async def get(self, key: str) -> str | None:
        with self._lock:
            if not self._alive(key):
                return None
            value = self._data[key]
            return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        with self._lock:
            self._put(key, str(value), ttl)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        with self._lock:
            if self._alive(key):
                return False
            self._put(key, value, ttl_ms / 1000)
            return True

    async def compare_and_delete(self, key: str, token: str) -> bool:
        with self._lock:
            if self._alive(key) and self._data[key] == token:
                self._data.pop(key, None)
                self._expires.pop(key, None)
                return True
            return False

    async def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._alive(key):
                    deleted += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
        return deleted

    async def keys(self, pattern: str) -> list[str]:
        with self._lock:
            return [
                key
                for key in list(self._data)
                if self._alive(key) and fnmatch.fnmatchcase(key, pattern)
            ]

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            if not self._alive(key):
                return False
            self._expires[key] = time.monotonic() + seconds
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if not self._alive(key):
                return -2
            expires_at = self._expires.get(key)
            if expires_at is None:
                return -1
            return math.ceil(expires_at - time.monotonic())

    async def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            current = int(self._data[key]) if self._alive(key) else 0
            self._data[key] = str(current + amount)
            return current + amount

    async def incrbyfloat(self, key: str, amount: float) -> float:
        with self._lock:
            current = float(self._data[key]) if self._alive(key) else 0.0
            self._data[key] = str(current + amount)
            return current + amount

    async def hset(self, key: str, mapping: dict[str, Any]) -> None:
        with self._lock:
            container = self._container(key, dict)
            container.update({field: str(value) for field, value in mapping.items()})

    async def hgetall(self, key: str) -> dict[str, str]:
        with self._lock:
            return dict(self._data[key]) if self._alive(key) else {}

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            container = self._container(key, dict)
            value = int(container.get(field, 0)) + amount
            container[field] = str(value)
            return value

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        with self._lock:
            container = self._container(key, dict)
            added = sum(1 for member in mapping if member not in container)
            container.update({member: float(score) for member, score in mapping.items()})
            return added

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        with self._lock:
            container = self._container(key, dict)
            container[member] = container.get(member, 0.0) + amount
            return container[member]

    async def zscore(self, key: str, member: str) -> float | None:
        with self._lock:
            if not self._alive(key):
                return None
            return self._data[key].get(member)

    async def zrem(self, key: str, *members: str) -> int:
        with self._lock:
            if not self._alive(key):
                return 0
            container = self._data[key]
            return sum(1 for member in members if container.pop(member, None) is not None)

    async def zcard(self, key: str) -> int:
        with self._lock:
            return len(self._data[key]) if self._alive(key) else 0

    async def zrank(self, key: str, member: str) -> int | None:
        with self._lock:
            members = [m for m, _ in self._sorted(key)]
        return members.index(member) if member in members else None

    async def zrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]:
        with self._lock:
            items = _slice(self._sorted(key), start, stop)
        return items if withscores else [member for member, _ in items]

    async def zrevrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]:
        with self._lock:
            items = _slice(list(reversed(self._sorted(key))), start, stop)
        return items if withscores else [member for member, _ in items]

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        with self._lock:
            return [m for m, score in self._sorted(key) if min_score <= score <= max_score]

    async def lpush(self, key: str, *values: str) -> int:
        with self._lock:
            container = self._container(key, list)
            for value in values:
                container.insert(0, value)
            return len(container)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        with self._lock:
            if self._alive(key):
                self._data[key] = _slice(self._data[key], start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        with self._lock:
            return _slice(self._data[key], start, stop) if self._alive(key) else []

    async def publish(self, channel: str, message: str) -> int:
        with self._lock:
            self.published.append((channel, message))
            queues = list(self._subscribers.get(channel, []))
        for queue in queues:
            queue.put_nowait((channel, message))
        return len(queues)

    async def subscribe(self, *channels: str) -> AsyncIterator[tuple[str, str]]:
        queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        with self._lock:
            for channel in channels:
                self._subscribers[channel].append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            with self._lock:
                for channel in channels:
                    self._subscribers[channel].remove(queue)

    async def close(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def messages(self, channel: str) -> list[Any]:
        """Decoded payloads published on a channel, oldest first."""
        return [json.loads(message) for name, message in self.published if name == channel]


class NullCache(CacheBackend):
    """Caching disabled: every read misses and writes are discarded.

    Locks are still honoured inside the process so invoice-level critical
    sections keep their mutual exclusion.
    """

    def __init__(self) -> None:
        self._locks: dict[str, tuple[str, float]] = {}
        self._lock = Lock()

    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        return None

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        now = time.monotonic()
        with self._lock:
            held = self._locks.get(key)
            if held is not None and held[1] > now:
                return False
            self._locks[key] = (value, now + ttl_ms / 1000)
            return True

    async def compare_and_delete(self, key: str, token: str) -> bool:
        with self._lock:
            held = self._locks.get(key)
            if held is None or held[0] != token:
                return False
            del self._locks[key]
            return True

    async def delete(self, *keys: str) -> int:
        return 0

    async def keys(self, pattern: str) -> list[str]:
        return []

    async def expire(self, key: str, seconds: int) -> bool:
        return False

    async def ttl(self, key: str) -> int:
        return -2

    async def incr(self, key: str, amount: int = 1) -> int:
        return amount

    async def incrbyfloat(self, key: str, amount: float) -> float:
        return amount

    async def hset(self, key: str, mapping: dict[str, Any]) -> None:
        return None

    async def hgetall(self, key: str) -> dict[str, str]:
        return {}

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return amount

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        return 0

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        return amount

    async def zscore(self, key: str, member: str) -> float | None:
        return None

    async def zrem(self, key: str, *members: str) -> int:
        return 0

    async def zcard(self, key: str) -> int:
        return 0

    async def zrank(self, key: str, member: str) -> int | None:
        return None

    async def zrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]:
        return []

    async def zrevrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]:
        return []

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        return []

    async def lpush(self, key: str, *values: str) -> int:
        return 0

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        return None

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return []

    async def publish(self, channel: str, message: str) -> int:
        return 0

    async def subscribe(self, *channels: str) -> AsyncIterator[tuple[str, str]]:
        return
        yield  # pragma: no cover

    async def close(self) -> None:
        return None


class RedisCache(CacheBackend):
    """Backend over ``redis.asyncio``; Redis errors surface as CacheUnavailable."""

    def __init__(self, client: Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(Redis.from_url(url, decode_responses=True))

    async def _run(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except RedisError as e:
            raise CacheUnavailable(str(e)) from e

    async def get(self, key: str) -> str | None:
        return await self._run(self.client.get(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self._run(self.client.set(key, value, ex=ttl))

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        return bool(await self._run(self.client.set(key, value, nx=True, px=ttl_ms)))

    async def compare_and_delete(self, key: str, token: str) -> bool:
        result = await self._run(self.client.eval(RELEASE_LOCK_SCRIPT, 1, key, token))
        return int(result) == 1

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run(self.client.delete(*keys)))

    async def keys(self, pattern: str) -> list[str]:
        try:
            return [
                key async for key in self.client.scan_iter(match=pattern, count=SCAN_BATCH_SIZE)
            ]
        except RedisError as e:
            raise CacheUnavailable(str(e)) from e

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._run(self.client.expire(key, seconds)))

    async def ttl(self, key: str) -> int:
        return int(await self._run(self.client.ttl(key)))

    async def incr(self, key: str, amount: int = 1) -> int:
        return int(await self._run(self.client.incrby(key, amount)))

    async def incrbyfloat(self, key: str, amount: float) -> float:
        return float(await self._run(self.client.incrbyfloat(key, amount)))

    async def hset(self, key: str, mapping: dict[str, Any]) -> None:
        await self._run(self.client.hset(key, mapping={k: str(v) for k, v in mapping.items()}))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._run(self.client.hgetall(key))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._run(self.client.hincrby(key, field, amount)))

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        return int(await self._run(self.client.zadd(key, mapping)))

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        return float(await self._run(self.client.zincrby(key, amount, member)))

    async def zscore(self, key: str, member: str) -> float | None:
        return await self._run(self.client.zscore(key, member))

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run(self.client.zrem(key, *members)))

    async def zcard(self, key: str) -> int:
        return int(await self._run(self.client.zcard(key)))

    async def zrank(self, key: str, member: str) -> int | None:
        return await self._run(self.client.zrank(key, member))

    async def zrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]:
        return await self._run(self.client.zrange(key, start, stop, withscores=withscores))

    async def zrevrange(
        self, key: str, start: int, stop: int, withscores: bool = False
    ) -> list[Any]:
        return await self._run(self.client.zrevrange(key, start, stop, withscores=withscores))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        return await self._run(self.client.zrangebyscore(key, min_score, max_score))

    async def lpush(self, key: str, *values: str) -> int:
        return int(await self._run(self.client.lpush(key, *values)))

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self._run(self.client.ltrim(key, start, stop))

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return await self._run(self.client.lrange(key, start, stop))

    async def publish(self, channel: str, message: str) -> int:
        return int(await self._run(self.client.publish(channel, message)))

    async def subscribe(self, *channels: str) -> AsyncIterator[tuple[str, str]]:
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(*channels)
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["channel"], message["data"]
        except RedisError as e:
            raise CacheUnavailable(str(e)) from e
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        await self.client.aclose()


def build_cache(backend: str | None = None, url: str | None = None) -> CacheBackend:
    """Create the configured cache backend."""
    backend = backend or settings.CACHE_BACKEND
    if backend == "redis":
        return RedisCache.from_url(url or settings.REDIS_URL)
    if backend == "memory":
        return InMemoryCache()
    if backend == "none":
        return NullCache()
    raise ValueError(f"Unknown cache backend: {backend}")


def get_cache(request: Request) -> CacheBackend:
    """FastAPI dependency returning the cache installed by the lifespan."""
    return request.app.state.cache  # type: ignore[no-any-return]


async def best_effort(awaitable: Awaitable[T], description: str) -> T | None:
    """Await a cache side effect, logging instead of raising when the cache is down."""
    try:
        return await awaitable
    except CacheUnavailable:
        logger.warning("Cache unavailable while %s", description, exc_info=True)
        return None


async def init_cache(app: Any = None) -> CacheBackend:
    """Build the configured backend and install it on ``app.state`` when given."""
    cache = build_cache()
    if app is not None:
        app.state.cache = cache
    logger.info("Cache backend initialised: %s", type(cache).__name__)
    return cache


async def close_cache(cache: CacheBackend | None) -> None:
    if cache is None:
        return
    try:
        await cache.close()
    except CacheUnavailable:
        logger.warning("Cache backend did not close cleanly", exc_info=True)
