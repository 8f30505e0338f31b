# stock_hub/services/fetch_history.py
"""
Fetch history: one FetchRecord per fetch, finalized exactly once.

Transitions are in_progress -> completed | failed | cancelled and terminal.
Records expire FETCH_HISTORY_TTL_DAYS after they start.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import (
    FetchRecord, FetchSource, FetchKind, FetchStatus, TriggeredBy, utcnow, as_utc,
)
from stock_hub.errors import NotFoundError, InvariantViolation
from stock_hub.settings import settings

logger = logging.getLogger(__name__)

EMPTY_RESULTS = {"fetched": 0, "created": 0, "updated": 0, "failed": 0, "skipped": 0}


class FetchHistoryService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(
        self,
        source: FetchSource,
        kind: FetchKind,
        triggered_by: TriggeredBy = TriggeredBy.manual,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FetchRecord:
        now = utcnow()
        record = FetchRecord(
            source=source,
            fetch_kind=kind,
            status=FetchStatus.in_progress,
            triggered_by=triggered_by,
            started_at=now,
            results=dict(EMPTY_RESULTS),
            fetch_metadata=metadata or {},
            expires_at=now + timedelta(days=settings.FETCH_HISTORY_TTL_DAYS),
        )
        self.db.add(record)
        await self.db.flush()
        logger.info(f"Fetch #{record.id} started: {source.value}/{kind.value} ({triggered_by.value})")
        return record

    async def _finalize(self, record_id: int, status: FetchStatus, results: Optional[Dict[str, int]] = None,
                        error_message: Optional[str] = None, error_details: Optional[Dict[str, Any]] = None) -> FetchRecord:
        record = await self.get(record_id)
        if record.status != FetchStatus.in_progress:
            raise InvariantViolation(
                f"Fetch #{record.id} is already {record.status.value}", code="FETCH_ALREADY_FINALIZED"
            )
        now = utcnow()
        record.status = status
        record.completed_at = now
        record.duration_ms = int((now - as_utc(record.started_at)).total_seconds() * 1000)
        if results is not None:
            record.results = {**EMPTY_RESULTS, **results}
        record.error_message = error_message
        record.error_details = error_details
        await self.db.flush()
        logger.info(f"Fetch #{record.id} {status.value} in {record.duration_ms} ms: {record.results}")
        return record

    async def complete(self, record_id: int, results: Dict[str, int]) -> FetchRecord:
        return await self._finalize(record_id, FetchStatus.completed, results)

    async def fail(self, record_id: int, message: str, details: Optional[Dict[str, Any]] = None,
                   results: Optional[Dict[str, int]] = None) -> FetchRecord:
        return await self._finalize(record_id, FetchStatus.failed, results, message, details)

    async def cancel(self, record_id: int, actor_id: str, reason: Optional[str] = None) -> FetchRecord:
        """Operator marks a stuck record cancelled; the engine never does this itself."""
        return await self._finalize(
            record_id, FetchStatus.cancelled, None,
            reason or f"Cancelled by {actor_id}", {"cancelled_by": actor_id},
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, record_id: int) -> FetchRecord:
        record = await self.db.get(FetchRecord, record_id)
        if record is None:
            raise NotFoundError(f"Fetch record {record_id} not found")
        return record

    async def recent(self, source: Optional[FetchSource] = None, status: Optional[FetchStatus] = None,
                     limit: int = 20) -> List[FetchRecord]:
        stmt = select(FetchRecord)
        if source is not None:
            stmt = stmt.where(FetchRecord.source == source)
        if status is not None:
            stmt = stmt.where(FetchRecord.status == status)
        stmt = stmt.order_by(FetchRecord.started_at.desc(), FetchRecord.id.desc()).limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def active(self, source: Optional[FetchSource] = None) -> List[FetchRecord]:
        return await self.recent(source=source, status=FetchStatus.in_progress, limit=100)

    async def stuck(self, older_than_min: Optional[int] = None, now: Optional[datetime] = None) -> List[FetchRecord]:
        """In-progress records older than the threshold (reported, never auto-failed)."""
        now = now or utcnow()
        limit = timedelta(minutes=older_than_min or settings.STUCK_FETCH_AFTER_MIN)
        return [r for r in await self.active() if now - as_utc(r.started_at) > limit]

    async def last_by_source(self) -> Dict[str, Optional[FetchRecord]]:
        out: Dict[str, Optional[FetchRecord]] = {}
        for source in FetchSource:
            rows = await self.recent(source=source, limit=1)
            out[source.value] = rows[0] if rows else None
        return out

    async def last_successful(self, source: Optional[FetchSource] = None) -> Optional[FetchRecord]:
        rows = await self.recent(source=source, status=FetchStatus.completed, limit=1)
        return rows[0] if rows else None

    async def statistics(self, days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts per source and status over the window; success rate = completed / (completed + failed)."""
        now = now or utcnow()
        since = now - timedelta(days=days)
        result = await self.db.execute(
            select(FetchRecord.source, FetchRecord.status, func.count(), func.avg(FetchRecord.duration_ms))
            .where(FetchRecord.started_at >= since)
            .group_by(FetchRecord.source, FetchRecord.status)
        )

        per_source: Dict[str, Dict[str, Any]] = {}
        totals = {s.value: 0 for s in FetchStatus}
        for source, status, count, avg_ms in result.all():
            entry = per_source.setdefault(source.value, {s.value: 0 for s in FetchStatus})
            entry[status.value] = count
            if status == FetchStatus.completed and avg_ms is not None:
                entry["avg_duration_ms"] = int(avg_ms)
            totals[status.value] += count

        for entry in per_source.values():
            entry["success_rate"] = success_rate(entry["completed"], entry["failed"])

        return {
            "days": days,
            "total": sum(totals.values()),
            **totals,
            "success_rate": success_rate(totals["completed"], totals["failed"]),
            "by_source": per_source,
        }

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        result = await self.db.execute(delete(FetchRecord).where(FetchRecord.expires_at < now))
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} expired fetch records")
        return result.rowcount or 0


def success_rate(completed: int, failed: int) -> Optional[float]:
    """Percentage, or None when nothing finished in the window."""
    finished = completed + failed
    if finished == 0:
        return None
    return round(completed / finished * 100, 2)
