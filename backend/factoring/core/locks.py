"""Distributed locks and stampede-protected read-through caching."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Callable
from types import TracebackType
from typing import Any

from factoring.core.cache import CacheBackend, CacheUnavailable, dumps, loads
from factoring.core.config import settings
from factoring.core.exceptions import OperationInProgress

logger = logging.getLogger(__name__)

# Held while an invoice's offer set can change its outcome: acceptance and new bids.
ACCEPT_OPERATION = "accept_offer"


def invoice_lock_key(invoice_id: str, operation: str) -> str:
    return f"invoice:lock:{invoice_id}:{operation}"


class DistributedLock:
    """Short-TTL named lock: SET NX PX with a private token, released by compare-and-delete.

    Used as ``async with DistributedLock(cache, key):``. When the lock cannot
    be obtained within ``wait_seconds`` the context raises
    ``OperationInProgress``. When the cache itself is unreachable the lock
    degrades to a no-op (``degraded`` is set) and the caller relies on the
    store's conditional updates alone.
    """

    def __init__(
        self,
        cache: CacheBackend,
        key: str,
        ttl_ms: int | None = None,
        wait_seconds: float | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.cache = cache
        self.key = key
        self.ttl_ms = ttl_ms or settings.CACHE_LOCK_TTL_MS
        self.wait_seconds = settings.CACHE_LOCK_WAIT_SECONDS if wait_seconds is None else wait_seconds
        self.poll_interval = poll_interval or settings.CACHE_LOCK_POLL_INTERVAL
        self.token = uuid.uuid4().hex
        self.acquired = False
        self.degraded = False

    async def acquire(self) -> bool:
        deadline = time.monotonic() + self.wait_seconds
        while True:
            try:
                self.acquired = await self.cache.set_if_absent(self.key, self.token, self.ttl_ms)
            except CacheUnavailable:
                logger.warning("Lock %s unavailable, continuing without it", self.key)
                self.degraded = True
                return True
            if self.acquired or time.monotonic() >= deadline:
                return self.acquired
            await asyncio.sleep(self.poll_interval)

    async def release(self) -> bool:
        if not self.acquired:
            return False
        try:
            released = await self.cache.compare_and_delete(self.key, self.token)
        except CacheUnavailable:
            logger.warning("Failed to release lock %s; it will expire on its own", self.key)
            released = False
        self.acquired = False
        return released

    async def __aenter__(self) -> DistributedLock:
        if not await self.acquire():
            raise OperationInProgress(
                "Another operation is already in progress for this resource",
                lock=self.key,
            )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.release()


def invoice_lock(cache: CacheBackend, invoice_id: str, operation: str, **kwargs: Any) -> DistributedLock:
    return DistributedLock(cache, invoice_lock_key(invoice_id, operation), **kwargs)


async def _load(loader: Callable[[], Any]) -> Any:
    result = loader()
    if inspect.isawaitable(result):
        result = await result
    return None if result is None else loads(dumps(result))


async def read_through(
    cache: CacheBackend,
    key: str,
    ttl: int,
    loader: Callable[[], Any],
    lock_key: str | None = None,
) -> Any:
    """Serve ``key`` from the cache, recomputing it with ``loader`` on a miss.

    Only the caller holding ``lock_key`` recomputes and repopulates the
    entry; concurrent callers poll the cache until the value appears or the
    wait budget runs out, and then compute it themselves without writing.
    A loader returning ``None`` is never cached. Hits and misses both return
    the JSON form of the value so callers see one shape either way.
    """
    try:
        cached = await cache.get_json(key)
    except CacheUnavailable:
        logger.warning("Cache read failed for %s, serving from source", key)
        return await _load(loader)
    if cached is not None:
        return cached

    lock = DistributedLock(cache, lock_key or f"lock:{key}", wait_seconds=0)
    if not await lock.acquire():
        deadline = time.monotonic() + settings.CACHE_LOCK_WAIT_SECONDS
        while time.monotonic() < deadline:
            await asyncio.sleep(settings.CACHE_LOCK_POLL_INTERVAL)
            try:
                cached = await cache.get_json(key)
            except CacheUnavailable:
                break
            if cached is not None:
                return cached
        logger.info("Timed out waiting for %s to be repopulated", key)
        return await _load(loader)

    try:
        value = await _load(loader)
        if value is not None:
            try:
                await cache.set_json(key, value, ttl)
            except CacheUnavailable:
                logger.warning("Cache write failed for %s", key)
        return value
    finally:
        await lock.release()
