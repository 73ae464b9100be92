"""Sync control routes: status, manual trigger, reconnect, history, outbox."""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlmodel import Session, select

from jobtracker.context import SyncContext
from jobtracker.models.outbox import OutboxItem
from jobtracker.models.records import SYNCABLE_TABLES
from jobtracker.models.sync import SyncLog

router = APIRouter()


def get_context(request: Request) -> SyncContext:
    return request.app.state.context


def get_session(context: SyncContext = Depends(get_context)):
    """Yields a DB session on the context's engine."""
    with Session(context.engine) as session:
        yield session


class SyncStatusResponse(BaseModel):
    last_sync: Optional[str]
    pending_items: int
    sync_in_progress: bool
    sync_enabled: bool
    sync_available: bool
    is_online: bool
    failed_items: int
    completed_items: int


class SyncConfigRequest(BaseModel):
    enable_sync: bool


class EnqueueRequest(BaseModel):
    table: str
    record_id: int
    operation: Literal["create", "update", "delete"]
    data: Optional[Dict[str, Any]] = None


class OutboxItemResponse(BaseModel):
    id: int
    table_name: str
    record_id: int
    operation: str
    created_at: datetime
    retry_count: int
    last_retry_at: Optional[datetime]
    error_message: Optional[str]
    retryable: bool


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(context: SyncContext = Depends(get_context)):
    """Current engine state plus outbox counts."""
    status = context.service.get_status()
    stats = context.outbox.stats()
    return SyncStatusResponse(
        **status.to_dict(),
        failed_items=stats.failed,
        completed_items=stats.completed,
    )


@router.post("/trigger")
async def trigger_sync(context: SyncContext = Depends(get_context)):
    """
    Run a user-initiated full sync and return its result.
    Offline or busy engines answer immediately with success=false.
    """
    result = await context.service.trigger_sync()
    return result.to_dict()


@router.post("/retry")
async def retry_connection(context: SyncContext = Depends(get_context)):
    """Re-probe the sync API; on success sync is re-enabled and run once."""
    connected = await context.service.retry_connection()
    return {"connected": connected}


@router.put("/config")
async def update_config(
    request: SyncConfigRequest, context: SyncContext = Depends(get_context)
):
    await context.service.update_config(enable_sync=request.enable_sync)
    return context.service.get_status().to_dict()


@router.get("/history", response_model=List[SyncLog])
def sync_history(limit: int = 10, session: Session = Depends(get_session)):
    """Most recent sync cycles, newest first."""
    return session.exec(
        select(SyncLog).order_by(SyncLog.started_at.desc()).limit(limit)
    ).all()


@router.get("/outbox", response_model=List[OutboxItemResponse])
def pending_outbox(session: Session = Depends(get_session)):
    """Unsynced outbox items, oldest first."""
    items = session.exec(
        select(OutboxItem)
        .where(OutboxItem.synced_at.is_(None))
        .order_by(OutboxItem.created_at, OutboxItem.id)
    ).all()
    return [OutboxItemResponse(**item.model_dump()) for item in items]


@router.post("/outbox", status_code=201, response_model=OutboxItemResponse)
def enqueue(request: EnqueueRequest, context: SyncContext = Depends(get_context)):
    """Queue a committed local write for push (for out-of-process services)."""
    if request.table not in SYNCABLE_TABLES:
        raise HTTPException(status_code=422, detail=f"Unknown table {request.table!r}")
    item = context.outbox.enqueue(
        request.table, request.record_id, request.operation, request.data
    )
    return OutboxItemResponse(**item.model_dump())
