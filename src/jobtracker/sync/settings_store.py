"""Durable sync flags, stored as ``sync_<key>`` rows in the settings table."""
import json
import logging
from typing import Any

from sqlmodel import Session, select

from jobtracker.db.types import utcnow
from jobtracker.models.settings import UserSetting

logger = logging.getLogger(__name__)

CATEGORY = "sync"

ENABLE_SYNC = "enable_sync"
SYNC_AVAILABLE = "sync_available"
LAST_SYNC_TIME = "last_sync_time"

EPOCH = "1970-01-01T00:00:00Z"


class SyncSettingsStore:
    """Reads and writes the engine's process-wide flags.

    Rows are created on first write and overwritten afterwards; nothing here
    ever deletes one.
    """

    def __init__(self, engine):
        self.engine = engine

    @staticmethod
    def _key(key: str) -> str:
        return f"sync_{key}"

    def get(self, key: str, default: Any = None) -> Any:
        with Session(self.engine) as s:
            row = s.exec(
                select(UserSetting).where(
                    UserSetting.key == self._key(key),
                    UserSetting.category == CATEGORY,
                )
            ).first()
        if row is None:
            return default
        try:
            return json.loads(row.value)
        except ValueError:
            logger.warning("Ignoring unreadable setting %s=%r", row.key, row.value)
            return default

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with Session(self.engine) as s:
            row = s.exec(
                select(UserSetting).where(UserSetting.key == self._key(key))
            ).first()
            if row:
                row.value = encoded
                row.category = CATEGORY
                row.updated_at = utcnow()
            else:
                row = UserSetting(key=self._key(key), value=encoded, category=CATEGORY)
            s.add(row)
            s.commit()

    # ─── Typed accessors ──────────────────────────────────────────────────────

    @property
    def sync_enabled(self) -> bool:
        return bool(self.get(ENABLE_SYNC, False))

    @sync_enabled.setter
    def sync_enabled(self, value: bool) -> None:
        self.set(ENABLE_SYNC, bool(value))

    @property
    def sync_available(self) -> bool:
        return bool(self.get(SYNC_AVAILABLE, False))

    @sync_available.setter
    def sync_available(self, value: bool) -> None:
        self.set(SYNC_AVAILABLE, bool(value))

    @property
    def last_sync_time(self) -> str:
        """ISO 8601 timestamp of the last completed cycle's start, or the epoch."""
        return self.get(LAST_SYNC_TIME, None) or EPOCH

    @last_sync_time.setter
    def last_sync_time(self, value: str) -> None:
        self.set(LAST_SYNC_TIME, value)

    def has_synced(self) -> bool:
        return self.get(LAST_SYNC_TIME, None) is not None
