"""
APScheduler jobs for background sync.

A periodic sync picks up local changes made while the app sits idle, and a
daily job purges processed outbox rows even when no sync has run.

The scheduler runs inside the same process as the engine (wired in __main__).
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobtracker.sync.service import SyncService

logger = logging.getLogger(__name__)


def build_scheduler(
    service: SyncService, *, interval_minutes: int = 15, cleanup_hour: int = 4
) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        service: SyncService the jobs call into.
        interval_minutes: Period of the background sync.
        cleanup_hour: Hour (UTC) of the daily outbox cleanup.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        _periodic_sync,
        trigger="interval",
        minutes=interval_minutes,
        id="periodic_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"service": service},
    )
    scheduler.add_job(
        _outbox_cleanup,
        trigger="cron",
        hour=cleanup_hour,
        minute=0,
        id="outbox_cleanup",
        replace_existing=True,
        kwargs={"service": service},
    )

    return scheduler


async def _periodic_sync(service: SyncService) -> None:
    """
    Background sync. Skips quietly while offline, disabled, or already syncing.

    An unavailable API is re-probed first so a dropped connection recovers
    without user action.
    """
    try:
        settings = service.settings
        if not settings.sync_enabled or service.sync_in_progress:
            return
        if not settings.sync_available:
            if not await service.retry_connection():
                logger.debug("Sync API still unreachable")
            return

        result = await service.trigger_sync()
        if not result.success:
            logger.warning("Background sync finished with %d error(s)", len(result.errors))
    except Exception:
        logger.exception("Background sync failed")


async def _outbox_cleanup(service: SyncService) -> None:
    try:
        service.cleanup_outbox()
    except Exception:
        logger.exception("Outbox cleanup failed")
