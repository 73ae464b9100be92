"""
Integration tests for SyncService.

Runs the fully wired engine against FakeRemote (httpx.MockTransport) and an
in-memory SQLite DB. No real network calls are made.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlmodel import Session, select

from jobtracker.context import build_context
from jobtracker.db.types import utcnow
from jobtracker.models.outbox import OutboxItem
from jobtracker.models.records import Company, Contact
from jobtracker.models.sync import SyncLog
from jobtracker.sync.errors import ErrorKind, SyncInProgressError
from jobtracker.sync.settings_store import EPOCH


def go_online(context):
    context.store.sync_enabled = True
    context.store.sync_available = True


def add_company(engine, **fields) -> int:
    with Session(engine) as s:
        row = Company(**fields)
        s.add(row)
        s.commit()
        s.refresh(row)
        return row.id


def get_item(engine, item_id) -> OutboxItem:
    with Session(engine) as s:
        return s.get(OutboxItem, item_id)


def sync_logs(engine):
    with Session(engine) as s:
        return s.exec(select(SyncLog).order_by(SyncLog.id)).all()


def cloud_record(cloud_id, name, updated="2026-01-10T09:00:00.000Z", **extra):
    return {
        "id": cloud_id,
        "data": {"name": name},
        "created_at": "2026-01-09T09:00:00.000Z",
        "updated_at": updated,
        **extra,
    }


# ─── Push ─────────────────────────────────────────────────────────────────────

class TestPush:
    @pytest.mark.asyncio
    async def test_create_is_pushed_and_marked(self, context, remote, engine):
        add_company(engine, id=42, name="Acme")
        item = context.outbox.enqueue("companies", 42, "create", {"name": "Acme"})
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is True
        assert result.items_pushed == 1
        assert "companies" in result.synced_tables

        posts = remote.calls("POST", "/companies")
        assert len(posts) == 1
        body = json.loads(posts[0].content)
        assert body["local_id"] == 42
        assert body["operation"] == "create"
        assert body["data"] == {"name": "Acme"}
        assert posts[0].headers["Idempotency-Key"] == f"outbox-{item.id}"
        assert posts[0].headers["Authorization"] == "Bearer token-1"

        assert get_item(engine, item.id).synced_at is not None

    @pytest.mark.asyncio
    async def test_processed_item_not_pushed_again(self, context, remote, engine):
        add_company(engine, id=42, name="Acme")
        context.outbox.enqueue("companies", 42, "create", {"name": "Acme"})
        go_online(context)

        await context.service.perform_full_sync()
        await context.service.perform_full_sync()

        assert len(remote.calls("POST", "/companies")) == 1

    @pytest.mark.asyncio
    async def test_create_response_id_is_mapped(self, context, engine):
        add_company(engine, id=42, name="Acme")
        context.outbox.enqueue("companies", 42, "create", {"name": "Acme"})
        go_online(context)

        await context.service.perform_full_sync()

        with Session(engine) as s:
            assert s.get(Company, 42).cloud_id is not None

    @pytest.mark.asyncio
    async def test_update_and_delete(self, context, remote, engine):
        context.outbox.enqueue("companies", 7, "update", {"name": "Renamed"})
        context.outbox.enqueue("companies", 8, "delete")
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.items_pushed == 2
        puts = remote.calls("PUT", "/companies/7")
        assert json.loads(puts[0].content)["data"] == {"name": "Renamed"}
        assert remote.deleted == ["/companies/8"]

    @pytest.mark.asyncio
    async def test_failing_item_does_not_block_others(self, context, remote, engine):
        remote.status_overrides["POST /companies"] = 500
        bad = context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        good = context.outbox.enqueue("contacts", 2, "create", {"first_name": "Sam"})
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is False
        assert result.items_pushed == 1
        failed = get_item(engine, bad.id)
        assert failed.synced_at is None
        assert failed.retry_count == 1
        assert "500" in failed.error_message
        assert get_item(engine, good.id).synced_at is not None

        [issue] = result.errors
        assert issue.table == "companies"
        assert issue.record_id == 1
        assert issue.kind == ErrorKind.TRANSPORT
        assert issue.retryable is True
        assert sync_logs(engine)[-1].status == "partial"

    @pytest.mark.asyncio
    async def test_malformed_payload_is_not_retried(self, context, remote, engine):
        with Session(engine) as s:
            s.add(OutboxItem(table_name="companies", record_id=1, operation="create", data="{broken"))
            s.commit()
        go_online(context)

        first = await context.service.perform_full_sync()
        second = await context.service.perform_full_sync()

        assert first.errors[0].kind == ErrorKind.VALIDATION
        assert first.errors[0].retryable is False
        assert second.errors == []
        assert remote.calls("POST", "/companies") == []
        assert context.outbox.count_pending() == 1

    @pytest.mark.asyncio
    async def test_replayed_create_is_not_duplicated(self, context, remote, engine):
        """The remote already applied this item but its response was lost."""
        item = context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        remote.idempotency_keys[f"outbox-{item.id}"] = "companies-cloud-0"
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is True
        assert remote.stored == {}
        assert get_item(engine, item.id).synced_at is not None

    @pytest.mark.asyncio
    async def test_delete_of_missing_record_succeeds(self, context, remote, engine):
        remote.status_overrides["DELETE /companies/5"] = 404
        item = context.outbox.enqueue("companies", 5, "delete")
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is True
        assert get_item(engine, item.id).synced_at is not None

    @pytest.mark.asyncio
    async def test_exhausted_item_waits_for_backoff(self, context, remote, engine):
        item = context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        with Session(engine) as s:
            row = s.get(OutboxItem, item.id)
            row.retry_count = 3
            row.last_retry_at = utcnow()
            s.add(row)
            s.commit()
        go_online(context)

        await context.service.perform_full_sync()

        assert remote.calls("POST", "/companies") == []


# ─── Auth ─────────────────────────────────────────────────────────────────────

class TestAuth:
    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, context, remote, auth):
        remote.valid_tokens = {"token-2"}
        context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is True
        assert auth.refresh_calls == 1
        # health, rejected POST, retried POST
        assert remote.auth_headers[:3] == ["Bearer token-1", "Bearer token-1", "Bearer token-2"]
        assert len(remote.calls("POST", "/companies")) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_sends_request_once(self, context, remote, auth):
        remote.status_overrides["POST /companies"] = 401
        auth.refresh_ok = False
        context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is False
        assert auth.refresh_calls == 1
        assert len(remote.calls("POST", "/companies")) == 1

    @pytest.mark.asyncio
    async def test_rejected_item_does_not_stop_cycle(self, context, remote, auth, engine):
        remote.status_overrides["POST /companies"] = 401
        rejected = context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        later = context.outbox.enqueue("contacts", 2, "create", {"first_name": "Sam"})
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is False
        assert auth.refresh_calls == 1
        # rejected item sent twice, the next one still goes out
        assert len(remote.calls("POST", "/companies")) == 2
        assert len(remote.calls("POST", "/contacts")) == 1
        assert result.items_pushed == 1
        assert get_item(engine, later.id).synced_at is not None

        [issue] = result.errors
        assert (issue.table, issue.kind, issue.retryable) == ("companies", ErrorKind.AUTH, True)
        failed = get_item(engine, rejected.id)
        assert failed.synced_at is None
        assert failed.retry_count == 1
        assert failed.retryable is True

        # pulls still ran and the watermark moved
        for table in ("applications", "companies", "contacts", "reminders"):
            assert len(remote.calls("GET", f"/{table}")) == 1
        assert context.store.last_sync_time == result.last_sync_time
        assert sync_logs(engine)[-1].status == "partial"

    @pytest.mark.asyncio
    async def test_rejected_pull_keeps_watermark(self, context, remote, auth):
        remote.status_overrides["GET /companies"] = 401
        remote.pull_responses["contacts"] = [
            {
                "id": "p-1",
                "data": {"first_name": "Sam"},
                "created_at": "2026-01-09T09:00:00Z",
                "updated_at": "2026-01-09T09:00:00Z",
            }
        ]
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is False
        assert result.records_pulled == 1
        assert [(e.table, e.kind) for e in result.errors] == [("companies", ErrorKind.AUTH)]
        assert len(remote.calls("GET", "/reminders")) == 1
        assert context.store.last_sync_time == EPOCH
        assert context.store.sync_available is True


# ─── Pull ─────────────────────────────────────────────────────────────────────

class TestPull:
    @pytest.mark.asyncio
    async def test_pulls_every_table_since_watermark(self, context, remote):
        go_online(context)

        await context.service.perform_full_sync()

        for table in ("applications", "companies", "contacts", "reminders"):
            [request] = remote.calls("GET", f"/{table}")
            assert request.url.params["since"] == EPOCH

    @pytest.mark.asyncio
    async def test_pulled_records_are_applied(self, context, remote, engine):
        remote.pull_responses["companies"] = [
            cloud_record("c-1", "Acme"),
            cloud_record("c-2", "Globex"),
        ]
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.records_pulled == 2
        assert "companies" in result.synced_tables
        with Session(engine) as s:
            names = {c.name for c in s.exec(select(Company)).all()}
        assert names == {"Acme", "Globex"}

    @pytest.mark.asyncio
    async def test_last_sync_time_is_cycle_start(self, context, remote):
        go_online(context)

        first = await context.service.perform_full_sync()
        assert context.store.last_sync_time == first.last_sync_time

        await context.service.perform_full_sync()
        second_pull = remote.calls("GET", "/contacts")[-1]
        assert second_pull.url.params["since"] == first.last_sync_time

    @pytest.mark.asyncio
    async def test_failed_table_keeps_watermark(self, context, remote):
        remote.status_overrides["GET /companies"] = 503
        remote.pull_responses["contacts"] = [
            {
                "id": "p-1",
                "data": {"first_name": "Sam"},
                "created_at": "2026-01-09T09:00:00Z",
                "updated_at": "2026-01-09T09:00:00Z",
            }
        ]
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is False
        assert result.records_pulled == 1
        assert [e.table for e in result.errors] == ["companies"]
        assert context.store.has_synced() is False

    @pytest.mark.asyncio
    async def test_remote_tombstone_deletes_local_row(self, context, remote, engine):
        add_company(
            engine, name="Gone", cloud_id="c-9",
            updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        remote.pull_responses["companies"] = [
            cloud_record("c-9", "Gone", deleted_at="2026-01-10T09:00:00Z")
        ]
        go_online(context)

        await context.service.perform_full_sync()

        with Session(engine) as s:
            assert s.exec(select(Company)).all() == []


# ─── Cycle control ────────────────────────────────────────────────────────────

class TestCycleControl:
    @pytest.mark.asyncio
    async def test_concurrent_sync_is_rejected(self, settings, engine, auth):
        entered = asyncio.Event()
        release = asyncio.Event()
        requests = []

        async def handler(request):
            requests.append(request)
            entered.set()
            await release.wait()
            if request.url.path.endswith("/health"):
                return httpx.Response(200, json={"status": "ok"})
            return httpx.Response(200, json=[])

        context = build_context(
            settings, engine=engine, auth=auth, transport=httpx.MockTransport(handler)
        )
        go_online(context)

        first = asyncio.create_task(context.service.perform_full_sync())
        await entered.wait()
        seen = len(requests)

        with pytest.raises(SyncInProgressError):
            await context.service.perform_full_sync()
        busy = await context.service.trigger_sync()
        assert busy.success is False
        assert [e.kind for e in busy.errors] == [ErrorKind.BUSY]
        assert len(requests) == seen
        assert context.service.sync_in_progress is True

        release.set()
        result = await first
        assert result.success is True
        assert context.service.sync_in_progress is False
        await context.aclose()

    @pytest.mark.asyncio
    async def test_unavailable_returns_without_io(self, context, remote):
        context.store.sync_enabled = True
        result = await context.service.perform_full_sync()
        assert result.success is False
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_health_check_failure_aborts_before_push(self, context, remote, engine):
        remote.health_status = 503
        item = context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is False
        [issue] = result.errors
        assert (issue.table, issue.kind) == ("system", ErrorKind.CONNECTION)
        assert remote.calls("POST", "/companies") == []
        assert get_item(engine, item.id).retry_count == 0
        assert context.store.sync_available is False

    @pytest.mark.asyncio
    async def test_connection_lost_mid_push(self, settings, engine, auth, remote):
        def handler(request):
            if request.method == "POST":
                raise httpx.ConnectError("connection reset", request=request)
            return remote.handler(request)

        context = build_context(
            settings, engine=engine, auth=auth, transport=httpx.MockTransport(handler)
        )
        item = context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        go_online(context)

        result = await context.service.perform_full_sync()

        assert result.success is False
        [issue] = result.errors
        assert (issue.table, issue.kind) == ("system", ErrorKind.CONNECTION)
        assert context.store.sync_available is False
        assert get_item(engine, item.id).synced_at is None
        assert get_item(engine, item.id).retry_count == 0
        assert remote.calls("GET", "/companies") == []
        assert sync_logs(engine)[-1].status == "error"
        await context.aclose()

    @pytest.mark.asyncio
    async def test_sync_log_records_success(self, context, engine):
        context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        go_online(context)

        await context.service.perform_full_sync()

        [log] = sync_logs(engine)
        assert log.status == "success"
        assert log.items_pushed == 1
        assert log.finished_at is not None

    @pytest.mark.asyncio
    async def test_cycle_purges_old_processed_items(self, context, engine):
        item = context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        with Session(engine) as s:
            row = s.get(OutboxItem, item.id)
            row.synced_at = utcnow() - timedelta(days=30)
            s.add(row)
            s.commit()
        go_online(context)

        await context.service.perform_full_sync()

        assert get_item(engine, item.id) is None


# ─── Entry points ─────────────────────────────────────────────────────────────

class TestTriggerSync:
    @pytest.mark.asyncio
    async def test_offline_trigger_makes_no_requests(self, context, remote):
        context.store.sync_enabled = True
        context.store.sync_available = False

        result = await context.service.trigger_sync()

        assert result.success is False
        assert "offline" in result.errors[0].message
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_disabled_trigger_makes_no_requests(self, context, remote):
        context.store.sync_available = True
        result = await context.service.trigger_sync()
        assert result.success is False
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_online_trigger_runs_cycle(self, context, remote):
        go_online(context)
        result = await context.service.trigger_sync()
        assert result.success is True
        assert remote.calls("GET", "/health")


class TestInitialize:
    @pytest.mark.asyncio
    async def test_unauthenticated_user_stays_offline(self, context, remote, auth):
        auth.token = None
        await context.service.initialize()
        assert context.store.sync_enabled is False
        assert context.store.sync_available is False
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_authenticated_user_syncs(self, context, remote):
        context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        await context.service.initialize()
        assert context.store.sync_enabled is True
        assert context.store.sync_available is True
        assert context.store.has_synced() is True
        assert context.outbox.count_pending() == 0

    @pytest.mark.asyncio
    async def test_unreachable_remote_goes_offline(self, context, remote):
        remote.reachable = False
        await context.service.initialize()  # should not raise
        assert context.store.sync_enabled is True
        assert context.store.sync_available is False


class TestShutdownSync:
    @pytest.mark.asyncio
    async def test_pushes_pending_changes(self, context, remote):
        context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        context.outbox.enqueue("companies", 2, "create", {"name": "Globex"})
        go_online(context)
        messages = []

        result = await context.service.perform_shutdown_sync(messages.append)

        assert result.success is True
        assert messages == [
            "Checking for pending changes...",
            "Synchronizing 2 changes...",
            "Sync complete",
        ]
        assert context.outbox.count_pending() == 0

    @pytest.mark.asyncio
    async def test_nothing_to_sync(self, context, remote):
        go_online(context)
        messages = []
        result = await context.service.perform_shutdown_sync(messages.append)
        assert result.success is True
        assert messages == ["Checking for pending changes...", "No changes to sync"]
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_skipped_when_offline(self, context, remote):
        messages = []
        result = await context.service.perform_shutdown_sync(messages.append)
        assert result.success is True
        assert messages == ["Sync not available - skipping shutdown sync"]
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_connection_failure_keeps_changes(self, context, remote):
        context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        go_online(context)
        remote.reachable = False
        messages = []

        result = await context.service.perform_shutdown_sync(messages.append)

        assert result.success is False
        assert messages[-1] == "Connection failed - skipping sync"
        assert context.outbox.count_pending() == 1

    @pytest.mark.asyncio
    async def test_callback_errors_are_ignored(self, context):
        def explode(message):
            raise RuntimeError("UI gone")

        result = await context.service.perform_shutdown_sync(explode)
        assert result.success is True


class TestConnectionControl:
    @pytest.mark.asyncio
    async def test_retry_connection_restores_and_syncs(self, context, remote):
        context.store.sync_available = False
        assert await context.service.retry_connection() is True
        assert context.store.sync_enabled is True
        assert context.store.sync_available is True
        assert context.store.has_synced() is True

    @pytest.mark.asyncio
    async def test_retry_connection_still_down(self, context, remote):
        remote.reachable = False
        assert await context.service.retry_connection() is False
        assert context.store.sync_available is False

    @pytest.mark.asyncio
    async def test_update_config_enable_checks_connection(self, context, remote):
        await context.service.update_config(enable_sync=True)
        assert context.store.sync_enabled is True
        assert context.store.sync_available is True

    @pytest.mark.asyncio
    async def test_update_config_disable(self, context, remote):
        go_online(context)
        await context.service.update_config(enable_sync=False)
        assert context.store.sync_enabled is False
        assert remote.requests == []

    def test_get_status(self, context):
        context.outbox.enqueue("companies", 1, "create", {"name": "Acme"})
        status = context.service.get_status()
        assert status.pending_items == 1
        assert status.last_sync is None
        assert status.sync_in_progress is False
        assert status.is_online is False
