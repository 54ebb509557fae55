"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(tracker) -> AsyncIOScheduler:
    """Create and configure the scheduler with all jobs."""
    from eta_engine.config import settings

    scheduler = AsyncIOScheduler()

    # Downgrade silent buses every N seconds
    scheduler.add_job(
        tracker.check_staleness,
        "interval",
        seconds=settings.staleness_interval_seconds,
        id="staleness_sweep",
        name="Mark silent buses idle/offline",
        max_instances=1,
    )

    # Refresh route geometry and schedules every N hours
    scheduler.add_job(
        tracker.refresh_routes,
        "interval",
        hours=settings.route_refresh_hours,
        id="refresh_routes",
        name="Refresh routes and schedules from the directory",
        max_instances=1,
    )

    return scheduler
