# stock_hub/scheduler.py
"""
Periodic sync: every SCHEDULER_INTERVAL_MIN run a fetch per configured source,
then purge expired fetch history.

Runs as one asyncio task inside the API process. A source that is already
syncing is skipped for that tick.
"""
from __future__ import annotations
import asyncio
import logging
from typing import List, Optional

from stock_hub.database import get_session_context
from stock_hub.db_models import FetchSource, TriggeredBy
from stock_hub.errors import SyncInProgressError, StockHubError
from stock_hub.services.fetch_history import FetchHistoryService
from stock_hub.services.orchestrator import FetchOrchestrator
from stock_hub.settings import settings

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        interval_min: Optional[int] = None,
        sources: Optional[List[str]] = None,
        session_factory=get_session_context,
        sleep=asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.interval_s = max(1, interval_min or settings.SCHEDULER_INTERVAL_MIN) * 60
        self.sources = [FetchSource(s) for s in (sources if sources is not None else settings.SCHEDULER_SOURCES)]
        self.session_factory = session_factory
        self.sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.debug("Scheduler already running; skipping start")
            return
        self._task = asyncio.create_task(self._loop(), name="stock-hub-scheduler")
        logger.info(f"Scheduler started: every {self.interval_s // 60} min for {[s.value for s in self.sources]}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                # a failed tick (database down, purge error) must not end the loop
                logger.exception("Scheduled sync tick failed")
            await self.sleep(self.interval_s)

    async def run_once(self) -> dict:
        """One tick: fetch each source in turn, then purge expired history."""
        summary = {"started": [], "skipped": [], "failed": [], "purged": 0}
        for source in self.sources:
            try:
                record = await self.orchestrator.run_fetch(source, triggered_by=TriggeredBy.scheduled)
            except SyncInProgressError:
                logger.info(f"Scheduled fetch for {source.value} skipped: already running")
                summary["skipped"].append(source.value)
                continue
            except StockHubError as e:
                logger.error(f"Scheduled fetch for {source.value} could not start: {e.message}")
                summary["failed"].append(source.value)
                continue
            summary["started"].append({"source": source.value, "fetch_id": record.id, "status": record.status.value})

        async with self.session_factory() as db:
            summary["purged"] = await FetchHistoryService(db).purge_expired()
        return summary
