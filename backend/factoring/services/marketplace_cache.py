"""Offer and marketplace cache key space, channels, competition and expiry indexes."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from factoring.core.cache import CacheBackend, dumps, loads
from factoring.models.shared import utc_now

logger = logging.getLogger(__name__)

OFFER_DETAIL_TTL = 1800
OFFER_LIST_TTL = 600
LISTINGS_TTL = 300
COMPETITIVE_ANALYSIS_TTL = 900
OVERVIEW_TTL = 3600

COMPETITION_WINDOW = 7 * 24 * 3600
MARKETPLACE_TRENDING_KEY = "marketplace:trending:invoices"
MARKETPLACE_TRENDING_WINDOW = 4 * 3600
DAILY_TRENDING_WINDOW = 24 * 3600
INTEREST_WINDOW = 7 * 24 * 3600

NOTIFICATION_LIST_LIMIT = 100
NOTIFICATION_LIST_TTL = 7 * 24 * 3600

EXPIRING_KEY = "offers:expiring"
OVERVIEW_KEY = "marketplace:analytics:overview"

MARKETPLACE_OFFERS_CHANNEL = "marketplace:offers"
NEW_LISTINGS_CHANNEL = "marketplace:new_listings"


def offer_detail_key(offer_id: str) -> str:
    return f"offer:details:{offer_id}"


def invoice_offers_key(invoice_id: str) -> str:
    return f"offers:invoice:{invoice_id}"


def lender_offers_key(lender_id: str, digest: str) -> str:
    return f"offers:lender:{lender_id}:{digest}"


def listings_key(digest: str) -> str:
    return f"marketplace:listings:{digest}"


def competitive_analysis_key(invoice_id: str) -> str:
    return f"competitive:analysis:{invoice_id}"


def competition_key(invoice_id: str) -> str:
    return f"competition:{invoice_id}"


def competition_count_key(invoice_id: str) -> str:
    return f"competition:count:{invoice_id}"


def user_marketplace_channel(user_id: str) -> str:
    return f"user:{user_id}:marketplace"


def user_notification_list(user_id: str) -> str:
    return f"notifications:marketplace:{user_id}"


class MarketplaceCache:
    """Offer-side cache operations over an injected ``CacheBackend``."""

    def __init__(self, cache: CacheBackend):
        self.cache = cache

    async def invalidate_offer(
        self,
        offer_id: str,
        invoice_id: str | None = None,
        lender_id: str | None = None,
    ) -> int:
        keys = [offer_detail_key(offer_id)]
        if invoice_id:
            keys += [invoice_offers_key(invoice_id), competitive_analysis_key(invoice_id)]
        deleted = await self.cache.delete(*keys)
        if lender_id:
            deleted += await self.cache.delete_pattern(f"offers:lender:{lender_id}:*")
        deleted += await self.invalidate_listings()
        return deleted

    async def invalidate_listings(self) -> int:
        deleted = await self.cache.delete_pattern("marketplace:listings:*")
        deleted += await self.cache.delete(OVERVIEW_KEY)
        return deleted

    # --- Pub/sub ---

    async def publish_offer_update(self, payload: dict[str, Any]) -> None:
        """Fan an offer event out to the offer, invoice, lender and marketplace channels."""
        await self.cache.publish_json(f"offer:{payload['offer_id']}:updates", payload)
        await self.cache.publish_json(f"invoice:{payload['invoice_id']}:offers", payload)
        await self.cache.publish_json(f"lender:{payload['lender_id']}:offers", payload)
        await self.cache.publish_json(MARKETPLACE_OFFERS_CHANNEL, payload)

    async def publish_notification(self, user_id: str, payload: dict[str, Any]) -> None:
        """Publish a per-user marketplace notice and keep it in the user's recent list."""
        await self.cache.publish_json(user_marketplace_channel(user_id), payload)
        key = user_notification_list(user_id)
        await self.cache.lpush(key, dumps(payload))
        await self.cache.ltrim(key, 0, NOTIFICATION_LIST_LIMIT - 1)
        await self.cache.expire(key, NOTIFICATION_LIST_TTL)

    async def recent_notifications(self, user_id: str, limit: int = 20) -> list[Any]:
        raw_items = await self.cache.lrange(user_notification_list(user_id), 0, limit - 1)
        return [loads(raw) for raw in raw_items]

    async def publish_new_listing(self, invoice_id: str, data: dict[str, Any]) -> None:
        await self.cache.publish_json(
            NEW_LISTINGS_CHANNEL,
            {
                "type": "new_listing",
                "invoice_id": invoice_id,
                "timestamp": utc_now(),
                "data": data,
            },
        )

    # --- Competition ---

    async def track_competition(self, invoice_id: str, offer_id: str, interest_rate: float) -> None:
        key = competition_key(invoice_id)
        await self.cache.zadd(key, {offer_id: interest_rate})
        await self.cache.expire(key, COMPETITION_WINDOW)
        await self.cache.incr(competition_count_key(invoice_id))
        await self.cache.expire(competition_count_key(invoice_id), COMPETITION_WINDOW)

    async def remove_from_competition(self, invoice_id: str, *offer_ids: str) -> None:
        if offer_ids:
            await self.cache.zrem(competition_key(invoice_id), *offer_ids)

    async def competitive_position(self, invoice_id: str, offer_id: str) -> dict[str, Any] | None:
        """Rank by rate among tracked offers (ascending: lowest rate is best)."""
        key = competition_key(invoice_id)
        rank = await self.cache.zrank(key, offer_id)
        total = await self.cache.zcard(key)
        if rank is None or total == 0:
            return None
        better_than = ((total - rank - 1) / (total - 1) * 100) if total > 1 else 100.0
        return {"rank": rank + 1, "total_offers": total, "better_than_percent": round(better_than, 1)}

    async def lower_rate_count(self, invoice_id: str, interest_rate: float) -> int:
        """How many tracked offers undercut ``interest_rate``."""
        below = await self.cache.zrangebyscore(
            competition_key(invoice_id), float("-inf"), interest_rate - 1e-9
        )
        return len(below)

    async def total_offers_seen(self, invoice_id: str) -> int:
        return int(await self.cache.get(competition_count_key(invoice_id)) or 0)

    # --- Trending ---

    async def track_view(self, invoice_id: str, lender_id: str | None = None) -> None:
        await self.cache.zincrby(MARKETPLACE_TRENDING_KEY, 1, invoice_id)
        await self.cache.expire(MARKETPLACE_TRENDING_KEY, MARKETPLACE_TRENDING_WINDOW)
        daily_key = f"marketplace:trending:{utc_now().date().isoformat()}"
        await self.cache.zincrby(daily_key, 1, invoice_id)
        await self.cache.expire(daily_key, DAILY_TRENDING_WINDOW)
        if lender_id:
            interest_key = f"marketplace:interest:{invoice_id}:{lender_id}"
            await self.cache.incr(interest_key)
            await self.cache.expire(interest_key, INTEREST_WINDOW)

    async def trending(self, limit: int = 10) -> list[tuple[str, int]]:
        rows = await self.cache.zrevrange(MARKETPLACE_TRENDING_KEY, 0, limit - 1, withscores=True)
        return [(member, int(score)) for member, score in rows]

    async def track_offer_metrics(self, lender_id: str, amount: float) -> None:
        today = utc_now().date().isoformat()
        await self.cache.incr(f"offer:metrics:offers:{today}")
        await self.cache.incrbyfloat(f"offer:metrics:volume:{today}", amount)
        await self.cache.incr(f"offer:metrics:lender:{lender_id}:offers:{today}")
        await self.cache.incr("offer:metrics:total_offers")
        await self.cache.incrbyfloat("offer:metrics:total_volume", amount)

    # --- Expiry index ---

    async def track_expiration(self, offer_id: str, expires_at: datetime) -> None:
        await self.cache.zadd(EXPIRING_KEY, {offer_id: expires_at.timestamp()})

    async def remove_expiration(self, *offer_ids: str) -> None:
        if offer_ids:
            await self.cache.zrem(EXPIRING_KEY, *offer_ids)

    async def due_for_expiry(self, now: datetime | None = None) -> list[str]:
        now = now or utc_now()
        return await self.cache.zrangebyscore(EXPIRING_KEY, float("-inf"), now.timestamp())

    async def expiring_soon(self, within_minutes: int = 60) -> list[str]:
        now = utc_now()
        until = now + timedelta(minutes=within_minutes)
        return await self.cache.zrangebyscore(EXPIRING_KEY, now.timestamp(), until.timestamp())
