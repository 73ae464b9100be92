"""
OutboxQueue: a durable, append-only log of local mutations awaiting push.

Lifecycle of a row:
  1. enqueue()        created by a CRUD service after its local write commits
  2. mark_failed()    retry bookkeeping, any number of times
  3. mark_processed() synced_at set; terminal
  4. cleanup()        deleted once processed and past the retention window

Items are never dropped for failing too often. Once the retry budget is
spent they are throttled to one attempt per backoff window.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, or_
from sqlmodel import Session, SQLModel, select

from jobtracker.db.types import utcnow
from jobtracker.models.outbox import OPERATIONS, OutboxItem
from jobtracker.sync.payload import encode_payload

logger = logging.getLogger(__name__)


@dataclass
class OutboxStats:
    pending: int
    failed: int
    completed: int
    last_synced_at: Optional[datetime]


class OutboxQueue:
    """Outbox operations over the local store."""

    def __init__(
        self,
        engine,
        *,
        max_retries: int = 3,
        backoff: timedelta = timedelta(hours=1),
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            max_retries: Attempts allowed before an item is throttled.
            backoff: Minimum gap between attempts once throttled.
        """
        self.engine = engine
        self.max_retries = max_retries
        self.backoff = backoff

    def enqueue(
        self,
        table: str,
        record_id: int,
        operation: str,
        data: Union[Dict[str, Any], SQLModel, None] = None,
        *,
        session: Optional[Session] = None,
    ) -> OutboxItem:
        """
        Append a mutation to the log.

        Pass the caller's ``session`` to make the outbox row part of the same
        transaction as the write it describes; the caller commits. Without a
        session the row is committed on its own.

        Raises:
            ValueError: for an operation other than create/update/delete.
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown outbox operation {operation!r}")

        item = OutboxItem(
            table_name=table,
            record_id=record_id,
            operation=operation,
            data=encode_payload(table, data),
        )
        if session is not None:
            session.add(item)
            return item

        with Session(self.engine) as s:
            s.add(item)
            s.commit()
            s.refresh(item)
        logger.debug("Queued %s %s/%s", operation, table, record_id)
        return item

    def pending_items(self, now: Optional[datetime] = None) -> List[OutboxItem]:
        """Items due for a push attempt, oldest first."""
        now = now or utcnow()
        retry_after = now - self.backoff
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(OutboxItem)
                    .where(OutboxItem.synced_at.is_(None))
                    .where(OutboxItem.retryable == True)  # noqa: E712
                    .where(
                        or_(
                            OutboxItem.retry_count < self.max_retries,
                            OutboxItem.last_retry_at < retry_after,
                        )
                    )
                    .order_by(OutboxItem.created_at, OutboxItem.id)
                ).all()
            )

    def count_pending(self) -> int:
        """Number of unsynced items, due or not."""
        with Session(self.engine) as s:
            return s.exec(
                select(func.count())
                .select_from(OutboxItem)
                .where(OutboxItem.synced_at.is_(None))
            ).one()

    def mark_processed(self, item_id: int) -> None:
        with Session(self.engine) as s:
            item = s.get(OutboxItem, item_id)
            if item is None or item.synced_at is not None:
                return
            item.synced_at = utcnow()
            s.add(item)
            s.commit()

    def mark_failed(self, item_id: int, error: str, *, retryable: bool = True) -> None:
        """Record a failed attempt. The item stays pending unless not retryable."""
        with Session(self.engine) as s:
            item = s.get(OutboxItem, item_id)
            if item is None or item.synced_at is not None:
                return
            item.retry_count += 1
            item.last_retry_at = utcnow()
            item.error_message = error
            if not retryable:
                item.retryable = False
            s.add(item)
            s.commit()
            if item.retry_count == self.max_retries:
                logger.warning(
                    "Outbox item %s (%s/%s) exhausted its retry budget; "
                    "throttling to one attempt per %s",
                    item_id, item.table_name, item.record_id, self.backoff,
                )

    def cleanup(self, retention: timedelta = timedelta(days=7)) -> int:
        """Delete processed rows older than the retention window. Returns the count."""
        cutoff = utcnow() - retention
        with Session(self.engine) as s:
            expired = s.exec(
                select(OutboxItem)
                .where(OutboxItem.synced_at.is_not(None))
                .where(OutboxItem.synced_at < cutoff)
            ).all()
            for item in expired:
                s.delete(item)
            s.commit()
            removed = len(expired)
        if removed:
            logger.info("Cleaned up %d processed outbox items", removed)
        return removed

    def stats(self) -> OutboxStats:
        """Counts by state, for status displays."""
        with Session(self.engine) as s:
            unsynced = OutboxItem.synced_at.is_(None)
            pending = s.exec(
                select(func.count()).select_from(OutboxItem)
                .where(unsynced)
                .where(OutboxItem.retryable == True)  # noqa: E712
                .where(OutboxItem.retry_count < self.max_retries)
            ).one()
            failed = s.exec(
                select(func.count()).select_from(OutboxItem)
                .where(unsynced)
                .where(
                    or_(
                        OutboxItem.retryable == False,  # noqa: E712
                        OutboxItem.retry_count >= self.max_retries,
                    )
                )
            ).one()
            completed = s.exec(
                select(func.count()).select_from(OutboxItem)
                .where(OutboxItem.synced_at.is_not(None))
            ).one()
            last_synced_at = s.exec(select(func.max(OutboxItem.synced_at))).one()
        return OutboxStats(
            pending=pending,
            failed=failed,
            completed=completed,
            last_synced_at=last_synced_at,
        )
