"""
RecordReconciler: applies pulled CloudRecords to the local tables.

Rows are matched by cloud_id, never by local id, so applying the same batch
twice leaves the same state:

  tombstone  delete the row mapped to record.id (no-op if none)
  upsert     overwrite the mapped row, or insert a new one carrying cloud_id

Conflict policy is most-recent-wins on updated_at. A mapped row whose local
updated_at is at least the remote one is left alone; its newer local edit is
already queued in the outbox and will reach the remote on the next push.
Applied rows take the remote updated_at, which is what makes a re-applied
batch a no-op.

A record that fails validation is logged and skipped; the rest of the batch
still applies.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Type, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from jobtracker.db.types import utcnow
from jobtracker.models.records import SYNC_COLUMNS, model_for_table, payload_columns
from jobtracker.sync.types import CloudRecord

logger = logging.getLogger(__name__)

# Timestamps come from the CloudRecord envelope, not from its data.
_ENVELOPE_COLUMNS = frozenset({"created_at", "updated_at"})


@dataclass
class ReconcileSummary:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0

    @property
    def applied(self) -> int:
        return self.inserted + self.updated + self.deleted


class RecordReconciler:
    """Writes remote deltas into the local store."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    def apply_remote_changes(
        self, table: str, records: Iterable[Union[CloudRecord, Dict[str, Any]]]
    ) -> ReconcileSummary:
        """
        Apply one table's pulled records in order.

        Raises:
            KeyError: if the table does not take part in sync.
        """
        model = model_for_table(table)
        summary = ReconcileSummary()

        with Session(self.engine) as s:
            for raw in records:
                try:
                    record = raw if isinstance(raw, CloudRecord) else CloudRecord.model_validate(raw)
                    outcome = self._apply_one(s, model, table, record)
                    s.commit()
                except ValidationError as exc:
                    s.rollback()
                    summary.skipped += 1
                    logger.warning("Skipping malformed %s record %s: %s", table, _record_id(raw), exc)
                    continue
                except SQLAlchemyError as exc:
                    s.rollback()
                    summary.skipped += 1
                    logger.warning("Could not apply %s record %s: %s", table, _record_id(raw), exc)
                    continue
                setattr(summary, outcome, getattr(summary, outcome) + 1)

        if summary.applied or summary.skipped:
            logger.info(
                "Reconciled %s: %d inserted, %d updated, %d deleted, %d unchanged, %d skipped",
                table, summary.inserted, summary.updated, summary.deleted,
                summary.unchanged, summary.skipped,
            )
        return summary

    def map_cloud_id(self, table: str, record_id: int, cloud_id: str) -> bool:
        """
        Record the remote id assigned to a locally created row.

        Returns:
            True if the mapping was written. False if the row is gone, is
            already mapped, or another row owns that cloud id.
        """
        model = model_for_table(table)
        with Session(self.engine) as s:
            row = s.get(model, record_id)
            if row is None or row.cloud_id == cloud_id:
                return False
            if row.cloud_id is not None:
                logger.warning(
                    "%s/%s is already mapped to %s; ignoring %s",
                    table, record_id, row.cloud_id, cloud_id,
                )
                return False
            owner = s.exec(select(model).where(model.cloud_id == cloud_id)).first()
            if owner is not None:
                logger.warning(
                    "Cloud id %s already belongs to %s/%s", cloud_id, table, owner.id
                )
                return False
            row.cloud_id = cloud_id
            row.last_synced_at = utcnow()
            s.add(row)
            s.commit()
        return True

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _apply_one(
        self, s: Session, model: Type[SQLModel], table: str, record: CloudRecord
    ) -> str:
        """Apply a single record. Returns the ReconcileSummary field to bump."""
        existing = s.exec(select(model).where(model.cloud_id == record.id)).first()

        if record.is_tombstone:
            if existing is None:
                return "unchanged"
            if existing.updated_at > record.deleted_at:
                logger.info(
                    "Keeping %s/%s: edited locally after remote delete", table, existing.id
                )
                return "unchanged"
            s.delete(existing)
            return "deleted"

        fields = self._fields(table, record)
        now = utcnow()

        if existing is None:
            row = model.model_validate(
                {
                    **fields,
                    "created_at": record.created_at,
                    "updated_at": record.updated_at,
                    "cloud_id": record.id,
                    "last_synced_at": now,
                }
            )
            s.add(row)
            return "inserted"

        if existing.updated_at >= record.updated_at:
            if existing.cloud_id is None:
                existing.cloud_id = record.id
                existing.last_synced_at = now
                s.add(existing)
            return "unchanged"

        merged = model.model_validate(
            {**existing.model_dump(), **fields, "updated_at": record.updated_at}
        )
        for key in fields:
            setattr(existing, key, getattr(merged, key))
        existing.updated_at = record.updated_at
        existing.cloud_id = record.id
        existing.last_synced_at = now
        s.add(existing)
        return "updated"

    @staticmethod
    def _fields(table: str, record: CloudRecord) -> Dict[str, Any]:
        allowed = payload_columns(table) - _ENVELOPE_COLUMNS
        ignored = set(record.data) - allowed - SYNC_COLUMNS - _ENVELOPE_COLUMNS
        if ignored:
            logger.debug("Ignoring unknown %s fields: %s", table, ", ".join(sorted(ignored)))
        return {k: v for k, v in record.data.items() if k in allowed}


def _record_id(raw: Any) -> Any:
    if isinstance(raw, CloudRecord):
        return raw.id
    if isinstance(raw, dict):
        return raw.get("id")
    return None
