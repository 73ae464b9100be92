"""Value types passed between the sync components and their callers."""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from jobtracker.db.types import as_utc, utcnow
from jobtracker.sync.errors import ErrorKind, SyncError


def utc_iso(dt: datetime) -> str:
    """Format a naive-UTC or aware datetime as ISO 8601 with a trailing Z."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


@dataclass
class SyncIssue:
    """One failure recorded during a sync cycle."""

    table: str
    record_id: int
    operation: str
    message: str
    kind: ErrorKind
    retryable: bool

    @classmethod
    def from_error(
        cls, exc: SyncError, *, table: str, record_id: int = 0, operation: str
    ) -> "SyncIssue":
        return cls(
            table=table,
            record_id=record_id,
            operation=operation,
            message=str(exc),
            kind=exc.kind,
            retryable=exc.retryable,
        )


@dataclass
class SyncResult:
    """Aggregate outcome of one sync attempt."""

    success: bool
    last_sync_time: str
    synced_tables: List[str] = field(default_factory=list)
    errors: List[SyncIssue] = field(default_factory=list)
    items_pushed: int = 0
    records_pulled: int = 0

    def touch(self, table: str) -> None:
        if table not in self.synced_tables:
            self.synced_tables.append(table)

    @classmethod
    def failed(
        cls, message: str, *, kind: ErrorKind = ErrorKind.CONNECTION, operation: str = "sync"
    ) -> "SyncResult":
        """A result for an attempt that never reached the remote store."""
        return cls(
            success=False,
            last_sync_time=utc_iso(utcnow()),
            errors=[
                SyncIssue(
                    table="system",
                    record_id=0,
                    operation=operation,
                    message=message,
                    kind=kind,
                    retryable=True,
                )
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncStatus:
    """Snapshot of the engine state; derived on demand, never persisted."""

    last_sync: Optional[str]
    pending_items: int
    sync_in_progress: bool
    sync_enabled: bool
    sync_available: bool

    @property
    def is_online(self) -> bool:
        return self.sync_enabled and self.sync_available

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["is_online"] = self.is_online
        return data


class CloudRecord(BaseModel):
    """One row of a pull response. deleted_at marks a tombstone."""

    id: str
    local_id: Optional[int] = None
    data: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        # Remote ids are UUIDs, but some endpoints return integers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("created_at", "updated_at", "deleted_at")
    @classmethod
    def _aware_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Local rows load as aware UTC; a timestamp without an offset is UTC.
        return as_utc(v) if v is not None else None

    @property
    def is_tombstone(self) -> bool:
        return self.deleted_at is not None
