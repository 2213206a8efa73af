import logging
from typing import Any

from arq import cron

from factoring.core.cache import CacheUnavailable, build_cache, close_cache
from factoring.core.database import SessionLocal
from factoring.services.invoice_cache import InvoiceCache
from factoring.services.offer_service import OfferService
from factoring.services.outbox_service import OutboxService
from factoring.tasks import redis_settings

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    ctx["cache"] = build_cache()
    logger.info("Worker started with %s", type(ctx["cache"]).__name__)


async def shutdown(ctx: dict[str, Any]) -> None:
    await close_cache(ctx.get("cache"))


async def expire_offers_task(ctx: dict[str, Any]) -> int:
    """Background task: mark pending offers past their expiry EXPIRED.

    Runs every minute.
    """
    db = SessionLocal()
    try:
        count = await OfferService(db, ctx["cache"]).expire_offers()
        if count > 0:
            logger.info("Expired %d offers", count)
        return count
    finally:
        db.close()


async def process_outbox_task(ctx: dict[str, Any]) -> int:
    """Background task: deliver outbox events the request path did not.

    Picks up pending events older than the inline grace period and failed
    events whose backoff has elapsed. Runs every minute.
    """
    db = SessionLocal()
    try:
        count = await OutboxService(db, ctx["cache"]).process_pending_and_failed()
        if count > 0:
            logger.info("Attempted %d outbox events", count)
        return count
    finally:
        db.close()


async def dispatch_outbox_event_task(ctx: dict[str, Any], event_id: str) -> bool:
    db = SessionLocal()
    try:
        return await OutboxService(db, ctx["cache"]).dispatch_by_id(event_id)
    finally:
        db.close()


async def cleanup_expired_caches_task(ctx: dict[str, Any]) -> int:
    """Background task: give cache keys without a TTL a default one. Runs hourly."""
    try:
        return await InvoiceCache(ctx["cache"]).cleanup_expired_caches()
    except CacheUnavailable:
        logger.warning("Skipping cache cleanup, cache unavailable")
        return 0


class WorkerSettings:
    functions = [
        expire_offers_task,
        process_outbox_task,
        dispatch_outbox_event_task,
        cleanup_expired_caches_task,
    ]
    cron_jobs = [
        cron(expire_offers_task, second={0}),  # every minute
        cron(process_outbox_task, second={30}),  # every minute
        cron(cleanup_expired_caches_task, minute={0}),  # hourly
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
