"""
Scheduled housekeeping.

Uses APScheduler for in-process scheduling:
1. Registry sweep - drop finished provisioning/indexing entries once they
   are older than the retention window
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


def sweep_registries(services) -> int:
    evicted = services.evict_finished()
    if evicted:
        logger.info("Registry sweep removed %d finished entries", evicted)
    return evicted


def setup_scheduler(services) -> AsyncIOScheduler:
    """Create the scheduler with all housekeeping jobs registered (not started)."""
    interval = services.settings.status_sweep_interval_seconds
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        sweep_registries,
        trigger=IntervalTrigger(seconds=interval),
        args=[services],
        id="registry_sweep",
        name="Status Registry Sweep",
        replace_existing=True,
    )

    logger.info("Scheduler configured: registry sweep every %ss", interval)
    return scheduler


def start_scheduler(services) -> AsyncIOScheduler:
    scheduler = setup_scheduler(services)
    scheduler.start()
    logger.info("Housekeeping scheduler started")
    return scheduler


def stop_scheduler(scheduler) -> None:
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Housekeeping scheduler stopped")
