# stock_hub/services/orchestrator.py
"""
Fetch orchestrator: one resilient fetch per source at a time.

Flow of a fetch:
1. Claim the source (in-process lock, plus a DB check for a fresh in_progress record)
2. Create the FetchRecord in its own committed session
3. Collect raw records: list pages in order, then detail pages for line items
   (the whole collection is retried with exponential backoff; a login redirect
   re-authenticates before the next attempt)
4. Validate and upsert every record, tallying created/updated/skipped/failed
5. Optionally fold new mirrors into stock movements
6. Finalize the FetchRecord exactly once (completed or failed)
"""
from __future__ import annotations
import asyncio
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from stock_hub.automation.browser import PortalSession, playwright_session_factory
from stock_hub.automation.navigator import NavigationTimings, Navigator
from stock_hub.automation.parsers import lines_from_rows, record_from_row
from stock_hub.automation.portals import PortalConfig, portal_for
from stock_hub.automation.retry import retry_async
from stock_hub.database import get_session_context
from stock_hub.db_models import FetchKind, FetchRecord, FetchSource, TriggeredBy, as_utc, utcnow
from stock_hub.errors import (
    AuthRedirectError, InvariantViolation, RecordValidationError, RetryableFetchError,
    StockHubError, SyncInProgressError,
)
from stock_hub.services.fetch_history import EMPTY_RESULTS, FetchHistoryService
from stock_hub.services.ingestion import IngestionService, validate_record
from stock_hub.services.stock_processor import StockProcessor
from stock_hub.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class FetchRequest:
    source: FetchSource
    kind: FetchKind
    limit: Optional[int] = None
    direction: str = "new"
    process_stock: bool = False
    triggered_by: TriggeredBy = TriggeredBy.manual

    @property
    def max_pages(self) -> int:
        if self.limit:
            return max(1, math.ceil(self.limit / settings.PAGE_SIZE))
        return settings.MAX_PAGES


@dataclass
class Collected:
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    failed: int = 0


def resolve_kinds(portal: PortalConfig, kind: Optional[FetchKind]) -> List[FetchKind]:
    """Listings to walk for a requested kind; 'all' on a split portal walks every listing."""
    kind = kind or portal.default_kind
    if kind in portal.list_paths:
        return [kind]
    if kind == FetchKind.all:
        return list(portal.list_paths)
    raise InvariantViolation(
        f"{portal.name} does not support fetch kind '{kind.value}'",
        code="UNSUPPORTED_FETCH_KIND",
        details={"source": portal.source.value, "supported": [k.value for k in portal.list_paths]},
    )


class FetchOrchestrator:
    def __init__(
        self,
        session_factory=get_session_context,
        browser_factory: Callable[[PortalConfig], PortalSession] = playwright_session_factory,
        portal_factory: Callable[[FetchSource], PortalConfig] = portal_for,
        sleep=asyncio.sleep,
        timings: Optional[NavigationTimings] = None,
        attempts: Optional[int] = None,
        base_delay_s: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.browser_factory = browser_factory
        self.portal_factory = portal_factory
        self.sleep = sleep
        self.timings = timings or NavigationTimings.from_settings(settings)
        self.attempts = attempts or settings.FETCH_RETRY_ATTEMPTS
        self.base_delay_s = settings.FETCH_RETRY_BASE_DELAY_S if base_delay_s is None else base_delay_s
        self._locks: Dict[FetchSource, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _lock(self, source: FetchSource) -> asyncio.Lock:
        if source not in self._locks:
            self._locks[source] = asyncio.Lock()
        return self._locks[source]

    def is_running(self, source: FetchSource) -> bool:
        return self._lock(source).locked()

    # =========================================================================
    # Entry points
    # =========================================================================

    async def start_fetch(
        self,
        source: FetchSource,
        kind: Optional[FetchKind] = None,
        limit: Optional[int] = None,
        direction: str = "new",
        process_stock: bool = False,
        triggered_by: TriggeredBy = TriggeredBy.manual,
    ) -> FetchRecord:
        """Claim the source and run the fetch as a background task; returns the new in_progress record."""
        request, record = await self._claim(source, kind, limit, direction, process_stock, triggered_by)
        task = asyncio.create_task(self._run_and_release(request, record.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record

    async def run_fetch(
        self,
        source: FetchSource,
        kind: Optional[FetchKind] = None,
        limit: Optional[int] = None,
        direction: str = "new",
        process_stock: bool = False,
        triggered_by: TriggeredBy = TriggeredBy.manual,
    ) -> FetchRecord:
        """Claim the source and run the fetch to completion; returns the finalized record."""
        request, record = await self._claim(source, kind, limit, direction, process_stock, triggered_by)
        return await self._run_and_release(request, record.id)

    async def shutdown(self) -> None:
        """Cancel running fetches; their records stay in_progress until cancelled by an operator."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # =========================================================================
    # Claim / release
    # =========================================================================

    async def _claim(self, source, kind, limit, direction, process_stock, triggered_by):
        portal = self.portal_factory(source)
        kinds = resolve_kinds(portal, kind)
        request = FetchRequest(
            source=source,
            kind=kind or portal.default_kind,
            limit=limit,
            direction=direction,
            process_stock=process_stock,
            triggered_by=triggered_by,
        )

        lock = self._lock(source)
        if lock.locked():
            raise SyncInProgressError(source.value)
        await lock.acquire()
        try:
            async with self.session_factory() as db:
                history = FetchHistoryService(db)
                await self._check_other_workers(history, source)
                record = await history.start(
                    source, request.kind, triggered_by,
                    metadata={"listings": [k.value for k in kinds], "limit": limit, "direction": direction,
                              "process_stock": process_stock},
                )
        except BaseException:
            lock.release()
            raise
        return request, record

    async def _check_other_workers(self, history: FetchHistoryService, source: FetchSource) -> None:
        """A fresh in_progress record from another worker blocks; a stale one is only reported."""
        stale_after = timedelta(minutes=settings.STUCK_FETCH_AFTER_MIN)
        now = utcnow()
        for other in await history.active(source):
            if now - as_utc(other.started_at) < stale_after:
                raise SyncInProgressError(source.value)
            logger.warning(
                f"Fetch #{other.id} for {source.value} has been in progress since {other.started_at}; "
                f"ignoring it (cancel it via the history endpoint)"
            )

    async def _run_and_release(self, request: FetchRequest, record_id: int) -> FetchRecord:
        try:
            return await self._execute(request, record_id)
        finally:
            self._lock(request.source).release()

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, request: FetchRequest, record_id: int) -> FetchRecord:
        portal = self.portal_factory(request.source)
        browser = self.browser_factory(portal)
        label = f"{portal.name} fetch #{record_id}"

        async def reauthenticate(attempt: int, error: BaseException) -> None:
            if isinstance(error, AuthRedirectError):
                await browser.reauthenticate()

        try:
            try:
                collected: Collected = await retry_async(
                    lambda attempt: self._collect(browser, portal, request, attempt),
                    attempts=self.attempts,
                    base_delay_s=self.base_delay_s,
                    on_retry=reauthenticate,
                    sleep=self.sleep,
                    label=label,
                )
            finally:
                await browser.close()

            results = await self._ingest(request.source, collected)
            stock = None
            if request.process_stock:
                async with self.session_factory() as db:
                    stock = asdict(await StockProcessor(db).process_pending())
            return await self._complete(record_id, results, collected.pages, stock)

        except StockHubError as e:
            logger.error(f"{label} failed: {e.code}: {e.message}")
            return await self._fail(record_id, e.message, e.to_dict())
        except Exception as e:
            logger.exception(f"{label} failed unexpectedly")
            return await self._fail(record_id, f"{type(e).__name__}: {e}", {"code": "UNEXPECTED"})

    async def _collect(self, browser: PortalSession, portal: PortalConfig, request: FetchRequest,
                       attempt: int) -> Collected:
        """One attempt: walk every listing page in order, then read detail pages."""
        logger.info(f"{portal.name}: collecting {request.kind.value} (attempt {attempt}, "
                    f"limit={request.limit}, max_pages={request.max_pages})")
        page = await browser.open()
        nav = Navigator(page, portal, self.timings)
        out = Collected()

        for list_kind in resolve_kinds(portal, request.kind):
            if request.limit and len(out.records) >= request.limit:
                break
            await nav.goto(portal.list_url(list_kind))
            await nav.wait_for_content()
            await nav.sort_by_number(ascending=request.direction == "old")

            listing: List[Dict[str, Any]] = []
            pages = 0
            while True:
                pages += 1
                for row in await page.read_table_rows(portal.row_selector):
                    rec = record_from_row(row, portal, list_kind.value)
                    if rec is not None:
                        listing.append(rec)
                    if request.limit and len(out.records) + len(listing) >= request.limit:
                        break
                if request.limit and len(out.records) + len(listing) >= request.limit:
                    break
                if pages >= request.max_pages:
                    logger.info(f"{portal.name}: page cap {request.max_pages} reached")
                    break
                if not await nav.next_page():
                    break
                await nav.wait_for_content()

            logger.info(f"{portal.name}: {len(listing)} {list_kind.value} rows from {pages} page(s)")
            out.pages += pages
            if portal.detail_row_selector:
                listing = await self._read_details(nav, page, portal, listing, out)
            out.records.extend(listing)

        return out

    async def _read_details(self, nav: Navigator, page, portal: PortalConfig,
                            listing: List[Dict[str, Any]], out: Collected) -> List[Dict[str, Any]]:
        kept: List[Dict[str, Any]] = []
        for rec in listing:
            url = rec.get("detail_url")
            if not url:
                kept.append(rec)
                continue
            try:
                await nav.goto(url)
            except RetryableFetchError as e:
                # one unreachable detail page is a failed record, not a failed fetch
                logger.warning(f"{portal.name}: skipping {url}: {e}")
                out.failed += 1
                continue
            await nav.wait_for_content(portal.detail_row_selector)
            rec["lines"] = lines_from_rows(await page.read_table_rows(portal.detail_row_selector), portal)
            kept.append(rec)
        return kept

    async def _ingest(self, source: FetchSource, collected: Collected) -> Dict[str, int]:
        results = dict(EMPTY_RESULTS)
        results["fetched"] = len(collected.records) + collected.failed
        results["failed"] = collected.failed

        async with self.session_factory() as db:
            ingestion = IngestionService(db)
            for raw in collected.records:
                try:
                    record = validate_record(raw)
                except RecordValidationError as e:
                    logger.warning(f"Rejected {source.value} record: {e.message}")
                    results["failed"] += 1
                    continue
                _, outcome = await ingestion.ingest(record, source)
                results[outcome] += 1
        return results

    async def _complete(self, record_id: int, results: Dict[str, int], pages: int,
                        stock: Optional[Dict[str, Any]]) -> FetchRecord:
        async def finish(history: FetchHistoryService) -> FetchRecord:
            record = await history.complete(record_id, results)
            meta = dict(record.fetch_metadata or {})
            meta["pages"] = pages
            if stock is not None:
                meta["stock"] = stock
            record.fetch_metadata = meta
            return record

        return await self._finalize(record_id, finish)

    async def _fail(self, record_id: int, message: str, details: Dict[str, Any]) -> FetchRecord:
        return await self._finalize(record_id, lambda history: history.fail(record_id, message, details))

    async def _finalize(self, record_id: int, finish) -> FetchRecord:
        """Run ``finish``; a record an operator already cancelled keeps that outcome."""
        async with self.session_factory() as db:
            history = FetchHistoryService(db)
            try:
                return await finish(history)
            except InvariantViolation as e:
                if e.code != "FETCH_ALREADY_FINALIZED":
                    raise
                record = await history.get(record_id)
                logger.warning(f"Fetch #{record_id} was already {record.status.value}; dropping this run's outcome")
                return record
