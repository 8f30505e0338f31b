# stock_hub/services/health.py
"""
Sync health score.

Starts at 100 and subtracts a fixed penalty per violated threshold:

    any source without a success in 24h     -30  (once, naming the sources)
    7-day success rate < 90%                -20  (another -20 below 70%)
    > 10% of inventory items stale (48h)    -15
    > 20% of inventory items never synced   -15
    > 50 records waiting for stock processing -10

Every penalty comes with one warning and one recommendation.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import FetchSource, InventoryItem, ExternalInvoice, ExternalOrder, utcnow, as_utc
from stock_hub.services.fetch_history import FetchHistoryService
from stock_hub.settings import settings

logger = logging.getLogger(__name__)

PENALTY_STALE_DATA = 30
PENALTY_SUCCESS_BELOW_90 = 20
PENALTY_SUCCESS_BELOW_70 = 20
PENALTY_STALE_ITEMS = 15
PENALTY_UNSYNCED_ITEMS = 15
PENALTY_PENDING_RECORDS = 10

STALE_ITEMS_PCT = 10.0
UNSYNCED_ITEMS_PCT = 20.0
PENDING_RECORDS_MAX = 50


@dataclass
class HealthInputs:
    now: datetime
    # source -> completed_at of its latest successful fetch (None: never)
    last_success_by_source: Dict[str, Optional[datetime]] = field(default_factory=dict)
    weekly_completed: int = 0
    weekly_failed: int = 0
    pending_records: int = 0
    total_items: int = 0
    stale_items: int = 0
    unsynced_items: int = 0


@dataclass
class HealthCheck:
    name: str
    status: str  # ok | warning | critical | unknown
    value: Any = None
    penalty: int = 0


@dataclass
class HealthReport:
    score: int
    status: str
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    checks: List[HealthCheck] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def bucket(score: int) -> str:
    if score >= 90:
        return "excellent"
    if score >= 75:
        return "good"
    if score >= 60:
        return "fair"
    if score >= 40:
        return "poor"
    return "critical"


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def score_health(inputs: HealthInputs, fresh_hours: int = 24) -> HealthReport:
    """Pure scoring; missing data degrades to 'unknown' checks, never errors."""
    score = 100
    warnings: List[str] = []
    recommendations: List[str] = []
    checks: List[HealthCheck] = []

    def penalize(check: HealthCheck, points: int, warning: str, recommendation: str):
        nonlocal score
        score -= points
        check.penalty += points
        warnings.append(warning)
        recommendations.append(recommendation)

    # freshness, per source
    ages: Dict[str, Optional[float]] = {}
    for source, at in inputs.last_success_by_source.items():
        at = as_utc(at)
        ages[source] = round((inputs.now - at).total_seconds() / 3600, 1) if at else None

    if all(age is None for age in ages.values()):
        check = HealthCheck("data_freshness", "unknown", ages or None)
        penalize(check, PENALTY_STALE_DATA,
                 "No successful sync has been recorded",
                 "Run a manual sync for each source and check the fetch history for errors")
    else:
        check = HealthCheck("data_freshness", "ok", ages)
        stale = [s for s, age in ages.items() if age is None or age > fresh_hours]
        if stale:
            check.status = "critical"
            listed = ", ".join(
                f"{s} ({'never' if ages[s] is None else str(ages[s]) + 'h ago'})" for s in stale
            )
            penalize(check, PENALTY_STALE_DATA,
                     f"No successful sync in the last {fresh_hours}h for: {listed}",
                     "Trigger a manual sync for the stale sources and verify their portal credentials")
    checks.append(check)

    # weekly success rate
    finished = inputs.weekly_completed + inputs.weekly_failed
    if finished == 0:
        checks.append(HealthCheck("weekly_success_rate", "unknown", None))
    else:
        rate = _pct(inputs.weekly_completed, finished)
        check = HealthCheck("weekly_success_rate", "ok", rate)
        if rate < 90:
            check.status = "warning"
            penalize(check, PENALTY_SUCCESS_BELOW_90,
                     f"7-day sync success rate is {rate}% (below 90%)",
                     "Review failed fetches in the sync history for recurring errors")
        if rate < 70:
            check.status = "critical"
            penalize(check, PENALTY_SUCCESS_BELOW_70,
                     f"7-day sync success rate is {rate}% (below 70%)",
                     "Check portal availability and whether page selectors still match")
        checks.append(check)

    # item staleness / coverage
    if inputs.total_items == 0:
        checks.append(HealthCheck("stale_items", "unknown", 0.0))
        checks.append(HealthCheck("unsynced_items", "unknown", 0.0))
    else:
        stale_pct = _pct(inputs.stale_items, inputs.total_items)
        check = HealthCheck("stale_items", "ok", stale_pct)
        if stale_pct > STALE_ITEMS_PCT:
            check.status = "warning"
            penalize(check, PENALTY_STALE_ITEMS,
                     f"{inputs.stale_items} of {inputs.total_items} items ({stale_pct}%) not synced in {settings.HEALTH_ITEM_STALE_HOURS}h",
                     "Run an item sync and process pending stock")
        checks.append(check)

        unsynced_pct = _pct(inputs.unsynced_items, inputs.total_items)
        check = HealthCheck("unsynced_items", "ok", unsynced_pct)
        if unsynced_pct > UNSYNCED_ITEMS_PCT:
            check.status = "warning"
            penalize(check, PENALTY_UNSYNCED_ITEMS,
                     f"{inputs.unsynced_items} of {inputs.total_items} items ({unsynced_pct}%) have never been synced",
                     "Map unmatched portal item names to inventory items in the alias manager")
        checks.append(check)

    # processing backlog
    check = HealthCheck("pending_records", "ok", inputs.pending_records)
    if inputs.pending_records > PENDING_RECORDS_MAX:
        check.status = "warning"
        penalize(check, PENALTY_PENDING_RECORDS,
                 f"{inputs.pending_records} synced records are waiting for stock processing",
                 "Run stock processing to fold pending orders and invoices into inventory")
    checks.append(check)

    score = max(0, score)
    return HealthReport(
        score=score,
        status=bucket(score),
        warnings=warnings,
        recommendations=recommendations,
        checks=checks,
    )


class HealthService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.history = FetchHistoryService(db)

    async def gather(self, now: Optional[datetime] = None) -> HealthInputs:
        now = now or utcnow()
        stats = await self.history.statistics(days=7, now=now)
        last_success: Dict[str, Optional[datetime]] = {}
        for name in settings.SCHEDULER_SOURCES:
            record = await self.history.last_successful(FetchSource(name))
            last_success[name] = record.completed_at if record else None

        pending = 0
        for model in (ExternalInvoice, ExternalOrder):
            pending += (await self.db.execute(
                select(func.count()).select_from(model).where(model.stock_processed.is_(False))
            )).scalar_one()

        stale_before = now - timedelta(hours=settings.HEALTH_ITEM_STALE_HOURS)
        active = InventoryItem.is_active.is_(True)
        total = (await self.db.execute(select(func.count()).select_from(InventoryItem).where(active))).scalar_one()
        unsynced = (await self.db.execute(
            select(func.count()).select_from(InventoryItem).where(active, InventoryItem.last_synced_at.is_(None))
        )).scalar_one()
        stale = (await self.db.execute(
            select(func.count()).select_from(InventoryItem).where(active, InventoryItem.last_synced_at < stale_before)
        )).scalar_one()

        return HealthInputs(
            now=now,
            last_success_by_source=last_success,
            weekly_completed=stats["completed"],
            weekly_failed=stats["failed"],
            pending_records=pending,
            total_items=total,
            stale_items=stale,
            unsynced_items=unsynced,
        )

    async def report(self, now: Optional[datetime] = None) -> HealthReport:
        now = now or utcnow()
        inputs = await self.gather(now)
        report = score_health(inputs, settings.HEALTH_FRESH_HOURS)

        last_by_source = await self.history.last_by_source()
        stuck = await self.history.stuck(now=now)
        report.details = {
            "last_fetch": {
                source: (
                    {"id": r.id, "status": r.status.value, "started_at": r.started_at.isoformat(),
                     "results": r.results, "error_message": r.error_message}
                    if r else None
                )
                for source, r in last_by_source.items()
            },
            "stuck_fetches": [{"id": r.id, "source": r.source.value, "started_at": r.started_at.isoformat()} for r in stuck],
            "pending_records": inputs.pending_records,
            "items": {"total": inputs.total_items, "stale": inputs.stale_items, "unsynced": inputs.unsynced_items},
        }
        if report.score < 60:
            logger.warning(f"Sync health {report.status} ({report.score}): {report.warnings}")
        return report
