from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from factoring.core.config import settings

# Redis connection settings
redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis pool for arq"""
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job:
    """
    Enqueue a task to the arq worker.

    Args:
        task_name: Name of the task function
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        Job object from arq
    """
    pool = await get_redis_pool()
    try:
        job = await pool.enqueue_job(task_name, *args, **kwargs)
        return job  # type: ignore[return-value]
    finally:
        await pool.close()


async def enqueue_expire_offers() -> Job:
    """Enqueue an immediate offer expiry sweep."""
    return await enqueue_task("expire_offers_task")


async def enqueue_process_outbox() -> Job:
    """Enqueue delivery of stale pending and retryable failed outbox events."""
    return await enqueue_task("process_outbox_task")


async def enqueue_dispatch_outbox_event(event_id: str) -> Job:
    return await enqueue_task("dispatch_outbox_event_task", event_id)


async def enqueue_cleanup_caches() -> Job:
    return await enqueue_task("cleanup_expired_caches_task")
