"""Tests for APScheduler job configuration and the background job bodies."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobtracker.scheduler.jobs import _outbox_cleanup, _periodic_sync, build_scheduler
from jobtracker.sync.types import SyncResult


def make_service(*, enabled=True, available=True, in_progress=False):
    service = MagicMock()
    service.settings.sync_enabled = enabled
    service.settings.sync_available = available
    service.sync_in_progress = in_progress
    service.trigger_sync = AsyncMock(return_value=SyncResult(success=True, last_sync_time="t"))
    service.retry_connection = AsyncMock(return_value=False)
    return service


class TestBuildScheduler:
    def test_returns_scheduler(self):
        assert isinstance(build_scheduler(MagicMock()), AsyncIOScheduler)

    def test_jobs_registered(self):
        scheduler = build_scheduler(MagicMock())
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert job_ids == {"periodic_sync", "outbox_cleanup"}

    def test_periodic_sync_is_interval(self):
        scheduler = build_scheduler(MagicMock(), interval_minutes=5)
        job = next(j for j in scheduler.get_jobs() if j.id == "periodic_sync")
        assert job.trigger.__class__.__name__ == "IntervalTrigger"
        assert job.trigger.interval.total_seconds() == 300
        assert job.max_instances == 1

    def test_cleanup_hour(self):
        scheduler = build_scheduler(MagicMock(), cleanup_hour=3)
        job = next(j for j in scheduler.get_jobs() if j.id == "outbox_cleanup")
        assert job.trigger.__class__.__name__ == "CronTrigger"
        fields = {f.name: f for f in job.trigger.fields}
        assert str(fields["hour"]) == "3"

    def test_scheduler_not_running_on_creation(self):
        """build_scheduler should not auto-start."""
        assert not build_scheduler(MagicMock()).running


# ─── Job bodies ───────────────────────────────────────────────────────────────

class TestPeriodicSync:
    @pytest.mark.asyncio
    async def test_triggers_sync_when_online(self):
        service = make_service()
        await _periodic_sync(service)
        service.trigger_sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_when_disabled(self):
        service = make_service(enabled=False)
        await _periodic_sync(service)
        service.trigger_sync.assert_not_awaited()
        service.retry_connection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_when_sync_running(self):
        service = make_service(in_progress=True)
        await _periodic_sync(service)
        service.trigger_sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rechecks_when_unavailable(self):
        service = make_service(available=False)
        await _periodic_sync(service)
        service.retry_connection.assert_awaited_once()
        service.trigger_sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_swallows_errors(self):
        service = make_service()
        service.trigger_sync = AsyncMock(side_effect=RuntimeError("boom"))
        await _periodic_sync(service)  # should not raise


class TestOutboxCleanup:
    @pytest.mark.asyncio
    async def test_calls_cleanup(self):
        service = MagicMock()
        await _outbox_cleanup(service)
        service.cleanup_outbox.assert_called_once()

    @pytest.mark.asyncio
    async def test_swallows_errors(self):
        service = MagicMock()
        service.cleanup_outbox.side_effect = RuntimeError("db locked")
        await _outbox_cleanup(service)  # should not raise
