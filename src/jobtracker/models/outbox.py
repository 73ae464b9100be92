"""Outbox model: the durable log of local mutations awaiting push."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from jobtracker.db.types import UTCDateTime, utcnow

OPERATIONS = ("create", "update", "delete")


class OutboxItem(SQLModel, table=True):
    """
    One row per committed local write.

    synced_at stays NULL while the item is pending. Once set the row is
    never touched again except by the retention cleanup.
    """

    __tablename__ = "sync_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    record_id: int
    operation: str  # "create", "update", "delete"
    data: Optional[str] = None  # JSON envelope, see jobtracker.sync.payload
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
    synced_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)

    # Retry bookkeeping (written only by the sync service)
    retry_count: int = 0
    last_retry_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    error_message: Optional[str] = None
    retryable: bool = True  # False once a payload is found to be malformed
