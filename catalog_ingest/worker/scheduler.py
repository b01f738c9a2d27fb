"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from catalog_ingest.config import settings
from catalog_ingest.ingest.import_orchestrator import import_orchestrator

logger = logging.getLogger(__name__)


async def sync_new_apps_job() -> None:
    """Daily pull of the newest apps from the source."""
    stats = await import_orchestrator.sync_new_apps(limit=settings.new_apps_sync_limit)
    logger.info(
        f"Scheduled new app sync: {stats.created} created, "
        f"{stats.skipped} skipped, {stats.failed} failed"
    )


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    if not settings.scheduler_enabled:
        logger.info("Scheduler configured: new app sync disabled")
        return scheduler

    scheduler.add_job(
        sync_new_apps_job,
        CronTrigger(hour=settings.new_apps_sync_hour, minute=0),
        id="new_apps_sync",
        name="Import newest apps from the source",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: new app sync daily at %02d:00 (limit %d)",
        settings.new_apps_sync_hour,
        settings.new_apps_sync_limit,
    )
    return scheduler
