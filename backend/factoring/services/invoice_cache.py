"""Invoice cache key space, invalidation, pub/sub channels and view tracking."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any

from factoring.core.cache import CacheBackend, dumps
from factoring.models.shared import utc_now

logger = logging.getLogger(__name__)

INVOICE_DETAIL_TTL = 1800
INVOICE_SEARCH_TTL = 300
INVOICE_LIST_TTL = 600
MARKETPLACE_INVOICES_TTL = 300
POPULAR_INVOICES_TTL = 600
ANALYTICS_TTL = 3600

TRENDING_KEY = "trending:invoices"
TRENDING_WINDOW = 3600
POPULAR_KEY = "marketplace:popular"

# TTL given to cache keys found without one
ORPHAN_KEY_TTL = 86400
CLEANUP_PATTERNS = (
    "invoice:*",
    "offer:*",
    "offers:invoice:*",
    "offers:lender:*",
    "marketplace:*",
)
LOCK_PREFIX = "invoice:lock:"


def filters_digest(filters: dict[str, Any]) -> str:
    """Deterministic short hash of a filter/pagination tuple; None values are ignored."""
    normalized = {k: v for k, v in sorted(filters.items()) if v is not None and v != []}
    return hashlib.sha256(dumps(normalized).encode("utf-8")).hexdigest()[:16]


def detail_key(invoice_id: str) -> str:
    return f"invoice:details:{invoice_id}"


def search_key(digest: str) -> str:
    return f"invoice:search:{digest}"


def seller_list_key(seller_id: str, digest: str) -> str:
    return f"invoice:seller:{seller_id}:{digest}"


def anchor_list_key(anchor_id: str, digest: str) -> str:
    return f"invoice:anchor:{anchor_id}:{digest}"


def admin_list_key(digest: str) -> str:
    return f"invoice:admin:{digest}"


def marketplace_invoices_key(digest: str) -> str:
    return f"marketplace:invoices:{digest}"


def analytics_key(role: str, user_id: str, digest: str) -> str:
    return f"invoice:analytics:{role}:{user_id}:{digest}"


def invoice_updates_channel(invoice_id: str) -> str:
    return f"invoice:{invoice_id}:updates"


def seller_channel(seller_id: str) -> str:
    return f"seller:{seller_id}:notifications"


def anchor_channel(anchor_id: str) -> str:
    return f"anchor:{anchor_id}:notifications"


MARKETPLACE_UPDATES_CHANNEL = "marketplace:updates"


class InvoiceCache:
    """Invoice-side cache operations over an injected ``CacheBackend``.

    Invalidation and publish methods let ``CacheUnavailable`` propagate so
    the outbox can retry them; tracking helpers are called through
    ``best_effort`` by the read paths.
    """

    def __init__(self, cache: CacheBackend):
        self.cache = cache

    async def invalidate(
        self,
        invoice_id: str,
        seller_id: str | None = None,
        anchor_id: str | None = None,
    ) -> int:
        deleted = await self.cache.delete(detail_key(invoice_id))
        patterns = ["invoice:search:*", "invoice:admin:*", "invoice:analytics:*"]
        if seller_id:
            patterns.append(f"invoice:seller:{seller_id}:*")
        if anchor_id:
            patterns.append(f"invoice:anchor:{anchor_id}:*")
        for pattern in patterns:
            deleted += await self.cache.delete_pattern(pattern)
        deleted += await self.invalidate_marketplace()
        logger.debug("Invalidated %d cache keys for invoice %s", deleted, invoice_id)
        return deleted

    async def invalidate_marketplace(self) -> int:
        deleted = 0
        for pattern in ("marketplace:invoices:*", "marketplace:listings:*"):
            deleted += await self.cache.delete_pattern(pattern)
        deleted += await self.cache.delete(POPULAR_KEY, "marketplace:analytics:overview")
        return deleted

    async def publish_status_update(self, invoice_id: str, payload: dict[str, Any]) -> None:
        await self.cache.publish_json(invoice_updates_channel(invoice_id), payload)

    async def publish_seller_notification(self, seller_id: str, payload: dict[str, Any]) -> None:
        await self.cache.publish_json(seller_channel(seller_id), payload)

    async def publish_anchor_notification(self, anchor_id: str, payload: dict[str, Any]) -> None:
        await self.cache.publish_json(anchor_channel(anchor_id), payload)

    async def publish_marketplace_update(self, payload: dict[str, Any]) -> None:
        await self.cache.publish_json(MARKETPLACE_UPDATES_CHANNEL, payload)

    # --- Trending and metrics ---

    async def track_view(self, invoice_id: str) -> None:
        await self.cache.zincrby(TRENDING_KEY, 1, invoice_id)
        await self.cache.expire(TRENDING_KEY, TRENDING_WINDOW)

    async def trending(self, limit: int = 10) -> list[tuple[str, int]]:
        rows = await self.cache.zrevrange(TRENDING_KEY, 0, limit - 1, withscores=True)
        return [(member, int(score)) for member, score in rows]

    async def track_submission(self, seller_id: str, anchor_id: str, amount: float) -> None:
        today = utc_now().date().isoformat()
        await self.cache.incr(f"invoice:metrics:submissions:{today}")
        await self.cache.incrbyfloat(f"invoice:metrics:volume:{today}", amount)
        await self.cache.incr(f"invoice:metrics:seller:{seller_id}:submissions:{today}")
        await self.cache.incr(f"invoice:metrics:anchor:{anchor_id}:submissions:{today}")
        await self.cache.incr("invoice:metrics:total_submissions")
        await self.cache.incrbyfloat("invoice:metrics:total_volume", amount)

    async def track_status_change(self, from_status: str, to_status: str) -> None:
        today = utc_now().date().isoformat()
        await self.cache.incr(f"invoice:metrics:transitions:{from_status}_to_{to_status}:{today}")
        await self.cache.hincrby(f"invoice:metrics:status:{today}", to_status)

    async def daily_metrics(self, day: datetime | None = None) -> dict[str, Any]:
        today = (day or utc_now()).date().isoformat()
        submissions = await self.cache.get(f"invoice:metrics:submissions:{today}")
        volume = await self.cache.get(f"invoice:metrics:volume:{today}")
        statuses = await self.cache.hgetall(f"invoice:metrics:status:{today}")
        return {
            "date": today,
            "submissions": int(submissions or 0),
            "volume": float(volume or 0),
            "status_changes": {k: int(v) for k, v in statuses.items()},
        }

    async def cleanup_expired_caches(self) -> int:
        """Give every cache key without a TTL a 24h one. Locks are left alone."""
        fixed = 0
        for pattern in CLEANUP_PATTERNS:
            for key in await self.cache.keys(pattern):
                if key.startswith(LOCK_PREFIX):
                    continue
                if await self.cache.ttl(key) == -1:
                    await self.cache.expire(key, ORPHAN_KEY_TTL)
                    fixed += 1
        logger.info("Cache cleanup completed: %d keys given a TTL", fixed)
        return fixed
