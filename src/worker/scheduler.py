"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src import metrics
from src.config import settings
from src.errors import AppError
from src.services import Services

logger = logging.getLogger(__name__)


async def monitor_quota(services: Services) -> None:
    """Re-check the current credential so exhaustion is noticed between requests."""
    try:
        level = await services.pool.check_current()
    except AppError as e:
        logger.error(f"Quota monitor failed: {e.message}")
        metrics.record_scheduler_run("quota_monitor", success=False)
        return

    if level is not None:
        logger.debug(f"Current credential quota level: {level.value}")
    metrics.record_scheduler_run("quota_monitor", success=True)


async def cleanup_cache(services: Services) -> None:
    """Delete expired cache entries and request logs past retention."""
    try:
        expired = await services.cache.cleanup_expired()
        logs = await services.cache.cleanup_request_logs()
    except AppError as e:
        logger.error(f"Cache cleanup failed: {e.message}")
        metrics.record_scheduler_run("cache_cleanup", success=False)
        return

    logger.info(f"Cache cleanup removed {expired} entries and {logs} request logs")
    metrics.record_scheduler_run("cache_cleanup", success=True)


def setup_scheduler(services: Services) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Returns:
        Configured scheduler instance (not started)
    """
    scheduler = AsyncIOScheduler()
    quota_interval = max(1, settings.proxy_usage_check_minutes)
    cleanup_interval = max(1, settings.cache_cleanup_minutes)

    scheduler.add_job(
        monitor_quota,
        IntervalTrigger(minutes=quota_interval),
        args=[services],
        id="quota_monitor",
        name="Check current proxy credential quota",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=60,
        replace_existing=True,
    )

    scheduler.add_job(
        cleanup_cache,
        IntervalTrigger(minutes=cleanup_interval),
        args=[services],
        id="cache_cleanup",
        name="Delete expired cache entries and old request logs",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: quota check every %d minutes, cache cleanup every %d minutes",
        quota_interval,
        cleanup_interval,
    )
    return scheduler
