"""
Main entrypoint: runs the sync engine with its background scheduler.

The control API runs separately under uvicorn.

Usage:
    python -m jobtracker setup      # one-time: store an identity-provider session
    python -m jobtracker            # initialize, sync in the background, sync on exit
    python -m jobtracker sync       # one user-triggered sync, then exit
    python -m jobtracker status     # print the current sync status
    uvicorn --factory jobtracker.api.main:create_app --port 8765   # starts API
"""
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from jobtracker.scripts.setup import run_setup
    run_setup()


async def _run_engine() -> None:
    from jobtracker.config import get_settings
    from jobtracker.context import build_context
    from jobtracker.scheduler.jobs import build_scheduler

    settings = get_settings()
    context = build_context(settings)
    service = context.service

    await service.initialize()

    scheduler = build_scheduler(
        service,
        interval_minutes=settings.sync_interval_minutes,
        cleanup_hour=settings.outbox_cleanup_hour,
    )
    scheduler.start()
    logger.info(
        "Scheduler started (sync every %d min, outbox cleanup at %02d:00 UTC)",
        settings.sync_interval_minutes,
        settings.outbox_cleanup_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown(wait=False)
        result = await service.perform_shutdown_sync(
            lambda message: logger.info("Shutdown sync: %s", message)
        )
        if not result.success:
            logger.warning(
                "%d pending change(s) will be synced on next startup",
                service.outbox.count_pending(),
            )
        await context.aclose()
        logger.info("Goodbye.")


async def _run_once() -> int:
    from jobtracker.config import get_settings
    from jobtracker.context import build_context
    from jobtracker.sync.errors import RemoteConnectionError

    context = build_context(get_settings())
    try:
        # The stored availability flag may be stale; refresh it first.
        try:
            await context.service.test_connection()
        except RemoteConnectionError as exc:
            logger.warning("Sync API unreachable: %s", exc)
        result = await context.service.trigger_sync()
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1
    finally:
        await context.aclose()


async def _print_status() -> None:
    from jobtracker.config import get_settings
    from jobtracker.context import build_context

    context = build_context(get_settings())
    try:
        print(json.dumps(context.service.get_status().to_dict(), indent=2))
    finally:
        await context.aclose()


if __name__ == "__main__":
    # Dispatch on first argument: `python -m jobtracker <command>`
    command = sys.argv[1] if len(sys.argv) > 1 else ""
    if command == "setup":
        _run_setup()
    elif command == "sync":
        sys.exit(asyncio.run(_run_once()))
    elif command == "status":
        asyncio.run(_print_status())
    else:
        try:
            asyncio.run(_run_engine())
        except KeyboardInterrupt:
            pass
