"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from jobtracker.db.types import UTCDateTime, utcnow


class SyncLog(SQLModel, table=True):
    """Records each full-sync cycle for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    status: str = "running"  # "running", "success", "partial", "error"
    items_pushed: int = 0
    records_pulled: int = 0
    error_message: Optional[str] = None
