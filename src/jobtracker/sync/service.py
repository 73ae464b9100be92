"""
SyncService: orchestrates push/pull reconciliation with the remote store.

Flow for a full sync (perform_full_sync):
  1. Refuse if another cycle is running; return early if sync is unavailable
  2. Create SyncLog (status="running") and note the start time
  3. Probe GET /health; a failure aborts the cycle before anything is sent
  4. Push: drain the outbox oldest-first, one request per item
  5. Pull: GET /<table>?since=<last_sync_time> for each syncable table,
     handing the records to the reconciler
  6. Purge processed outbox rows past the retention window
  7. Save the start time from step 2 as last_sync_time
  8. Update SyncLog (status="success" / "partial" / "error")

Failure isolation:
  - connection failures abort the cycle and mark sync unavailable
  - a failing item, including one rejected by auth, is marked failed and the
    push moves on to the next one
  - a failing table pull (transport or auth) is recorded and the pull moves on
    to the next table; last_sync_time then stays put so the next cycle asks
    for the same window

Background entry points (initialize, perform_shutdown_sync) never raise.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlmodel import Session

from jobtracker.cloud.auth import AuthProvider
from jobtracker.cloud.client import CloudClient
from jobtracker.db.types import utcnow
from jobtracker.models.outbox import OutboxItem
from jobtracker.models.records import SYNCABLE_TABLES
from jobtracker.models.sync import SyncLog
from jobtracker.sync.errors import (
    AuthError,
    ErrorKind,
    PayloadValidationError,
    RemoteConnectionError,
    SyncError,
    SyncInProgressError,
    TransportError,
)
from jobtracker.sync.health import ConnectionMonitor
from jobtracker.sync.outbox import OutboxQueue
from jobtracker.sync.payload import PAYLOAD_SCHEMA_VERSION, decode_payload
from jobtracker.sync.reconciler import RecordReconciler
from jobtracker.sync.settings_store import LAST_SYNC_TIME, SyncSettingsStore
from jobtracker.sync.types import SyncIssue, SyncResult, SyncStatus, utc_iso

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class _CycleAborted(Exception):
    """Internal: stop the current cycle after recording why."""


class SyncService:
    """Coordinates the outbox, transport, reconciler and sync settings."""

    def __init__(
        self,
        *,
        engine,
        client: CloudClient,
        outbox: OutboxQueue,
        settings: SyncSettingsStore,
        monitor: ConnectionMonitor,
        reconciler: RecordReconciler,
        auth: Optional[AuthProvider] = None,
        retention: timedelta = timedelta(days=7),
    ):
        self.engine = engine
        self.client = client
        self.outbox = outbox
        self.settings = settings
        self.monitor = monitor
        self.reconciler = reconciler
        self.auth = auth
        self.retention = retention
        self._sync_in_progress = False

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    # ─── Lifecycle entry points ───────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Startup: enable sync for a signed-in user, probe, and run one full sync.

        Any failure leaves the app in offline mode; nothing propagates.
        """
        try:
            if self.auth is None or not self.auth.is_authenticated():
                logger.info("User not authenticated, sync disabled")
                self.settings.sync_enabled = False
                self.settings.sync_available = False
                return

            self.settings.sync_enabled = True
            logger.info("User authenticated, sync enabled (last sync: %s)", self.settings.last_sync_time)

            try:
                await self.monitor.test_connection()
            except RemoteConnectionError as exc:
                logger.warning("Could not connect to sync API, running in offline mode: %s", exc)
                return

            result = await self.perform_full_sync()
            if result.success:
                logger.info("Startup sync completed")
            else:
                logger.warning("Startup sync finished with %d error(s)", len(result.errors))
        except Exception:
            logger.exception("Startup sync failed, continuing offline")
            self._mark_unavailable()

    async def test_connection(self) -> None:
        """Probe the remote API. Raises RemoteConnectionError on failure."""
        await self.monitor.test_connection()

    async def trigger_sync(self) -> SyncResult:
        """User-initiated sync. Offline or busy engines answer with a failed result."""
        if not (self.settings.sync_enabled and self.settings.sync_available):
            return SyncResult.failed("Sync service not available - running in offline mode")
        try:
            return await self.perform_full_sync()
        except SyncInProgressError as exc:
            return SyncResult.failed(str(exc), kind=exc.kind)

    async def retry_connection(self) -> bool:
        """Re-probe; on success re-enable sync and try one full sync."""
        return await self.monitor.retry_connection(self.perform_full_sync)

    async def update_config(self, *, enable_sync: bool) -> None:
        """Persist the enable flag; enabling also probes the connection."""
        self.settings.sync_enabled = enable_sync
        if enable_sync:
            try:
                await self.monitor.test_connection()
                logger.info("Sync enabled and connection successful")
            except RemoteConnectionError as exc:
                logger.warning("Sync enabled but connection failed: %s", exc)

    async def perform_shutdown_sync(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> SyncResult:
        """
        Last-chance push before exit, reporting each step through on_progress.

        Never raises. A failed result means changes remain queued for the next
        startup; the caller decides whether to ask the user before exiting.
        """

        def notify(message: str) -> None:
            if on_progress is None:
                return
            try:
                on_progress(message)
            except Exception:
                logger.exception("Shutdown progress callback failed")

        try:
            if not (self.settings.sync_enabled and self.settings.sync_available):
                notify("Sync not available - skipping shutdown sync")
                return SyncResult(success=True, last_sync_time=utc_iso(utcnow()))

            notify("Checking for pending changes...")
            pending = len(self.outbox.pending_items())
            if pending == 0:
                notify("No changes to sync")
                return SyncResult(success=True, last_sync_time=utc_iso(utcnow()))

            notify(f"Synchronizing {pending} changes...")
            try:
                await self.monitor.test_connection()
            except RemoteConnectionError:
                notify("Connection failed - skipping sync")
                return SyncResult.failed(
                    "Could not connect to sync API - changes will be synced on next startup",
                    operation="shutdown_sync",
                )

            result = await self.perform_full_sync()
            if result.success:
                notify("Sync complete")
            else:
                notify("Sync finished with errors - remaining changes will be synced on next startup")
            return result
        except SyncInProgressError as exc:
            notify("A sync is already running - skipping shutdown sync")
            return SyncResult.failed(str(exc), kind=exc.kind, operation="shutdown_sync")
        except Exception as exc:
            logger.exception("Shutdown sync failed")
            notify("Sync failed - changes will be synced on next startup")
            return SyncResult.failed(
                f"Shutdown sync failed: {exc}", kind=ErrorKind.TRANSPORT, operation="shutdown_sync"
            )

    async def shutdown(self) -> None:
        """Release network resources. Does not sync; see perform_shutdown_sync."""
        await self.client.aclose()
        logger.info("Sync service shut down")

    # ─── Full sync ────────────────────────────────────────────────────────────

    async def perform_full_sync(self) -> SyncResult:
        """
        Run one push-then-pull cycle.

        Raises:
            SyncInProgressError: if another cycle is already running. Raised
                before any I/O.
        """
        # Check-and-set with no await in between: atomic on the event loop.
        if self._sync_in_progress:
            raise SyncInProgressError()
        if not self.settings.sync_available:
            return SyncResult.failed("Sync service not available - API connection failed")
        self._sync_in_progress = True

        started_at = utcnow()
        result = SyncResult(success=True, last_sync_time=utc_iso(started_at))
        log = None
        try:
            log = self._create_sync_log(started_at)
            logger.info("Starting full synchronization")
            await self._run_cycle(result)
        except _CycleAborted:
            result.success = False
        except Exception as exc:
            logger.exception("Full synchronization failed")
            result.success = False
            result.errors.append(
                SyncIssue(
                    table="system",
                    record_id=0,
                    operation="sync",
                    message=f"Unexpected error: {exc}",
                    kind=ErrorKind.TRANSPORT,
                    retryable=True,
                )
            )
        finally:
            self._sync_in_progress = False

        if result.success and result.errors:
            result.success = False
        if log is not None:
            self._finish_sync_log(log, result)
        logger.info(
            "Full synchronization %s: %d pushed, %d pulled, %d error(s)",
            "completed" if result.success else "finished with errors",
            result.items_pushed, result.records_pulled, len(result.errors),
        )
        return result

    async def _run_cycle(self, result: SyncResult) -> None:
        try:
            await self.monitor.test_connection()
        except RemoteConnectionError as exc:
            self._abort(result, exc, operation="sync")

        since = self.settings.last_sync_time
        try:
            await self._push_local_changes(result)
            pulled_cleanly = await self._pull_remote_changes(result, since)
        except RemoteConnectionError as exc:
            self._mark_unavailable()
            self._abort(result, exc, operation="sync")

        self.cleanup_outbox()

        if pulled_cleanly:
            self.settings.last_sync_time = result.last_sync_time
        else:
            logger.warning("Keeping last_sync_time at %s; some tables failed to pull", since)

    def _abort(self, result: SyncResult, exc: SyncError, *, operation: str) -> None:
        logger.error("Sync aborted: %s", exc)
        result.errors.append(SyncIssue.from_error(exc, table="system", operation=operation))
        raise _CycleAborted() from exc

    # ─── Push ─────────────────────────────────────────────────────────────────

    async def _push_local_changes(self, result: SyncResult) -> None:
        items = self.outbox.pending_items()
        if items:
            logger.info("Pushing %d queued change(s)", len(items))

        for item in items:
            try:
                await self._push_item(item)
            except RemoteConnectionError:
                raise
            except AuthError as exc:
                # Not the item's fault; keep it retryable for after re-auth.
                self._record_item_failure(result, item, exc, retryable=True)
                continue
            except PayloadValidationError as exc:
                self._record_item_failure(result, item, exc, retryable=False)
                continue
            except TransportError as exc:
                self._record_item_failure(result, item, exc, retryable=True)
                continue
            except Exception as exc:
                logger.exception("Unexpected error pushing outbox item %s", item.id)
                wrapped = TransportError(f"Unexpected error: {exc}")
                self._record_item_failure(result, item, wrapped, retryable=True)
                continue

            self.outbox.mark_processed(item.id)
            result.items_pushed += 1
            result.touch(item.table_name)

    async def _push_item(self, item: OutboxItem) -> None:
        """Send one outbox item. 409 on create and 404 on delete mean already applied."""
        fields = decode_payload(item.table_name, item.data)
        key = f"outbox-{item.id}"

        if item.operation == "delete":
            try:
                await self.client.delete(item.table_name, item.record_id, idempotency_key=key)
            except TransportError as exc:
                if exc.status_code != 404:
                    raise
                logger.info("%s/%s already deleted remotely", item.table_name, item.record_id)
            return

        if item.operation not in ("create", "update"):
            raise PayloadValidationError(f"Unknown operation {item.operation!r}")

        payload = {
            "local_id": item.record_id,
            "data": fields,
            "operation": item.operation,
            "timestamp": utc_iso(utcnow()),
            "schema_version": PAYLOAD_SCHEMA_VERSION,
        }
        if item.operation == "update":
            await self.client.update(item.table_name, item.record_id, payload, idempotency_key=key)
            return

        try:
            body = await self.client.create(item.table_name, payload, idempotency_key=key)
        except TransportError as exc:
            if exc.status_code != 409:
                raise
            logger.info("%s/%s already exists remotely", item.table_name, item.record_id)
            return
        cloud_id = body.get("id") if isinstance(body, dict) else None
        if cloud_id:
            self.reconciler.map_cloud_id(item.table_name, item.record_id, str(cloud_id))

    def _record_item_failure(
        self, result: SyncResult, item: OutboxItem, exc: SyncError, *, retryable: bool
    ) -> None:
        logger.warning(
            "Failed to push %s %s/%s: %s", item.operation, item.table_name, item.record_id, exc
        )
        self.outbox.mark_failed(item.id, str(exc), retryable=retryable)
        result.errors.append(
            SyncIssue.from_error(
                exc, table=item.table_name, record_id=item.record_id, operation=item.operation
            )
        )

    # ─── Pull ─────────────────────────────────────────────────────────────────

    async def _pull_remote_changes(self, result: SyncResult, since: str) -> bool:
        """Pull every table. Returns False if any table could not be fetched."""
        clean = True
        for table in SYNCABLE_TABLES:
            try:
                records = await self.client.changes_since(table, since)
            except (TransportError, AuthError) as exc:
                clean = False
                logger.warning("Failed to pull %s: %s", table, exc)
                result.errors.append(SyncIssue.from_error(exc, table=table, operation="pull"))
                continue

            if not records:
                continue
            summary = self.reconciler.apply_remote_changes(table, records)
            result.records_pulled += summary.applied
            result.touch(table)
        return clean

    # ─── Maintenance & status ─────────────────────────────────────────────────

    def cleanup_outbox(self) -> int:
        return self.outbox.cleanup(self.retention)

    def get_status(self) -> SyncStatus:
        return SyncStatus(
            last_sync=self.settings.get(LAST_SYNC_TIME, None),
            pending_items=self.outbox.count_pending(),
            sync_in_progress=self._sync_in_progress,
            sync_enabled=self.settings.sync_enabled,
            sync_available=self.settings.sync_available,
        )

    def _mark_unavailable(self) -> None:
        self.settings.sync_available = False
        logger.info("Marked sync as unavailable")

    # ─── Audit log ────────────────────────────────────────────────────────────

    def _create_sync_log(self, started_at: datetime) -> SyncLog:
        log = SyncLog(started_at=started_at, status="running")
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(self, log: SyncLog, result: SyncResult) -> None:
        if result.success:
            status = "success"
        elif any(issue.table == "system" for issue in result.errors):
            status = "error"
        else:
            status = "partial"
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = status
            db_log.finished_at = utcnow()
            db_log.items_pushed = result.items_pushed
            db_log.records_pulled = result.records_pulled
            db_log.error_message = "; ".join(issue.message for issue in result.errors)[:2000] or None
            s.add(db_log)
            s.commit()
