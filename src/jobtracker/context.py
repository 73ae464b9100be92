"""
Explicit handle on the sync engine.

Built once at process start and passed to every consumer (CLI, scheduler,
API), then closed at shutdown. Nothing in the engine lives at module level.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx

from jobtracker.cloud.auth import AuthProvider, SessionAuthProvider
from jobtracker.cloud.client import CloudClient
from jobtracker.config import Settings
from jobtracker.db.engine import build_engine
from jobtracker.sync.health import ConnectionMonitor
from jobtracker.sync.outbox import OutboxQueue
from jobtracker.sync.reconciler import RecordReconciler
from jobtracker.sync.service import SyncService
from jobtracker.sync.settings_store import SyncSettingsStore

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    settings: Settings
    engine: object
    auth: Optional[AuthProvider]
    client: CloudClient
    outbox: OutboxQueue
    store: SyncSettingsStore
    monitor: ConnectionMonitor
    reconciler: RecordReconciler
    service: SyncService

    async def aclose(self) -> None:
        """Close network clients. The database engine is left to its owner."""
        await self.service.shutdown()
        close = getattr(self.auth, "aclose", None)
        if close is not None:
            await close()


def build_context(
    settings: Settings,
    *,
    engine=None,
    auth: Optional[AuthProvider] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SyncContext:
    """
    Wire every sync component together.

    Args:
        settings: Application settings.
        engine: SQLAlchemy engine; built from settings.database_url if omitted.
        auth: AuthProvider; defaults to a SessionAuthProvider reading the
              saved session from settings.session_dir.
        transport: Optional httpx transport for the sync API (tests).
    """
    if engine is None:
        engine = build_engine(settings.database_url)
    if auth is None:
        session_auth = SessionAuthProvider(
            settings.auth_url,
            settings.auth_api_key,
            session_dir=settings.session_dir,
            timeout=settings.request_timeout_seconds,
        )
        session_auth.load_if_present()
        auth = session_auth

    client = CloudClient(
        settings.api_base_url,
        auth,
        timeout=settings.request_timeout_seconds,
        user_agent=settings.user_agent,
        transport=transport,
    )
    outbox = OutboxQueue(
        engine,
        max_retries=settings.outbox_max_retries,
        backoff=timedelta(minutes=settings.outbox_backoff_minutes),
    )
    store = SyncSettingsStore(engine)
    monitor = ConnectionMonitor(client, store)
    reconciler = RecordReconciler(engine)
    service = SyncService(
        engine=engine,
        client=client,
        outbox=outbox,
        settings=store,
        monitor=monitor,
        reconciler=reconciler,
        auth=auth,
        retention=timedelta(days=settings.outbox_retention_days),
    )
    logger.debug("Sync context built for %s", settings.api_base_url)
    return SyncContext(
        settings=settings,
        engine=engine,
        auth=auth,
        client=client,
        outbox=outbox,
        store=store,
        monitor=monitor,
        reconciler=reconciler,
        service=service,
    )
