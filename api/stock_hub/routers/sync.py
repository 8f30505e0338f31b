# stock_hub/routers/sync.py
"""
Sync Router - portal fetches, fetch history and sync health.
"""
from __future__ import annotations
from typing import Optional, List

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.database import get_session
from stock_hub.db_models import FetchSource, FetchStatus, TriggeredBy
from stock_hub.deps import get_actor, get_orchestrator, require_admin
from stock_hub.models import SyncRequest, SyncStarted, FetchRecordOut
from stock_hub.services.fetch_history import FetchHistoryService
from stock_hub.services.health import HealthService

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/{source}", response_model=SyncStarted, status_code=202)
async def start_sync(
    source: FetchSource,
    body: Optional[SyncRequest] = None,
    actor: str = Depends(get_actor),
    orchestrator=Depends(get_orchestrator),
):
    """
    Start a background fetch for one source.

    Returns the in_progress FetchRecord id right away; 409 if the source is
    already syncing.
    """
    body = body or SyncRequest()
    record = await orchestrator.start_fetch(
        source,
        kind=body.kind,
        limit=body.limit,
        direction=body.direction,
        process_stock=body.process_stock,
        triggered_by=TriggeredBy.api,
    )
    return SyncStarted(fetch_id=record.id, source=record.source, kind=record.fetch_kind, status=record.status)


@router.get("/history", response_model=List[FetchRecordOut])
async def sync_history(
    source: Optional[FetchSource] = None,
    status: Optional[FetchStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
):
    return await FetchHistoryService(db).recent(source=source, status=status, limit=limit)


@router.get("/history/{record_id}", response_model=FetchRecordOut)
async def sync_history_detail(record_id: int, db: AsyncSession = Depends(get_session)):
    return await FetchHistoryService(db).get(record_id)


@router.post("/history/{record_id}/cancel", response_model=FetchRecordOut)
async def cancel_sync(
    record_id: int,
    reason: Optional[str] = Body(default=None, embed=True),
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """Mark a stuck in_progress record cancelled (does not stop a running task)."""
    return await FetchHistoryService(db).cancel(record_id, actor, reason)


@router.get("/active", response_model=List[FetchRecordOut])
async def active_syncs(db: AsyncSession = Depends(get_session)):
    return await FetchHistoryService(db).active()


@router.get("/statistics")
async def sync_statistics(
    days: int = Query(default=7, ge=1, le=90),
    db: AsyncSession = Depends(get_session),
):
    return await FetchHistoryService(db).statistics(days=days)


@router.get("/health")
async def sync_health(db: AsyncSession = Depends(get_session)):
    report = await HealthService(db).report()
    return report.to_dict()
