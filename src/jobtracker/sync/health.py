"""Remote reachability probing and the sync_available flag."""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from jobtracker.cloud.client import CloudClient
from jobtracker.sync.errors import RemoteConnectionError
from jobtracker.sync.settings_store import SyncSettingsStore

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class ConnectionMonitor:
    """
    Tracks whether the remote API answered its last health probe.

    The state only moves on an explicit probe result. Nothing is inferred
    from elapsed time or from earlier states.
    """

    def __init__(self, client: CloudClient, settings: SyncSettingsStore):
        self.client = client
        self.settings = settings
        self.state = ConnectionState.UNKNOWN

    async def test_connection(self) -> None:
        """
        Probe GET /health and record the outcome in sync_available.

        Raises:
            RemoteConnectionError: if the probe fails (after recording it).
        """
        try:
            body = await self.client.health()
        except RemoteConnectionError as exc:
            self._record(False)
            logger.warning("Connection test failed: %s", exc)
            raise
        self._record(True)
        logger.debug("Connection test succeeded: %s", body)

    async def retry_connection(
        self, on_restored: Optional[Callable[[], Awaitable[Any]]] = None
    ) -> bool:
        """
        Re-run the probe; on success re-enable sync and run ``on_restored`` once.

        Returns:
            True if the probe succeeded. A failure inside ``on_restored`` is
            logged and does not change the answer.
        """
        try:
            await self.test_connection()
        except RemoteConnectionError:
            return False

        self.settings.sync_enabled = True
        logger.info("Connection restored, sync re-enabled")
        if on_restored is not None:
            try:
                await on_restored()
            except Exception:
                logger.exception("Connection restored but the follow-up sync failed")
        return True

    def _record(self, available: bool) -> None:
        self.state = ConnectionState.AVAILABLE if available else ConnectionState.UNAVAILABLE
        self.settings.sync_available = available
