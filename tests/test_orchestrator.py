from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select, func

from stock_hub.automation.navigator import NavigationTimings
from stock_hub.automation.portals import routestar_invoices
from stock_hub.database import get_session_context
from stock_hub.db_models import (
    ExternalInvoice, FetchKind, FetchRecord, FetchSource, FetchStatus, TriggeredBy,
)
from stock_hub.errors import LoginError, SyncInProgressError, InvariantViolation
from stock_hub.services.fetch_history import FetchHistoryService
from stock_hub.services.orchestrator import FetchOrchestrator, resolve_kinds

from conftest import FakePage, FakeSession, invoice_row, line_row

BASE = "https://portal.test"
PENDING = f"{BASE}/web/invoices/"
CLOSED = f"{BASE}/web/closedinvoices/"


def _portal(source=FetchSource.routestar_invoices):
    portal = routestar_invoices()
    portal.base_url = BASE
    return portal


def _orchestrator(page: FakePage, sleeps=None, attempts=3):
    session = FakeSession(page)
    recorded = sleeps if sleeps is not None else []

    async def fake_sleep(seconds):
        recorded.append(seconds)

    orch = FetchOrchestrator(
        session_factory=get_session_context,
        browser_factory=lambda portal: session,
        portal_factory=lambda source: _portal(source),
        sleep=fake_sleep,
        timings=NavigationTimings(strategies=["load", "commit"], nav_timeout_ms=10, fixed_wait_ms=1,
                                  stabilize_ms=1, content_timeout_ms=1, element_timeout_ms=1, settle_ms=1),
        attempts=attempts,
        base_delay_s=5.0,
    )
    return orch, session


async def _count(model):
    async with get_session_context() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def test_fetch_collects_pages_details_and_completes(engine):
    page = FakePage(
        pages={PENDING: [
            [invoice_row("1001", detail="/web/invoice/1001"), invoice_row("1002")],
            [invoice_row("1003")],
        ]},
        details={f"{BASE}/web/invoice/1001": [line_row("Wheat", "5", "4.00", "20.00"), line_row("Total", "", "", "")]},
    )
    orch, session = _orchestrator(page)

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert record.status == FetchStatus.completed
    assert record.results["fetched"] == 3
    assert record.results["created"] == 3
    assert record.completed_at is not None
    assert record.fetch_metadata["pages"] == 2
    assert session.closed == 1
    assert not orch.is_running(FetchSource.routestar_invoices)

    async with get_session_context() as db:
        inv = (await db.execute(
            select(ExternalInvoice).where(ExternalInvoice.invoice_number == "1001")
        )).scalar_one()
        assert inv.total == Decimal("40.00")
        assert [(l.name, l.quantity) for l in inv.lines] == [("Wheat", Decimal("5"))]


async def test_refetch_is_idempotent(engine):
    page = FakePage(pages={PENDING: [[invoice_row("1001"), invoice_row("1002")]]})
    orch, _ = _orchestrator(page)

    await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)
    second = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert second.results["created"] == 0
    assert second.results["updated"] == 2
    assert await _count(ExternalInvoice) == 2


async def test_limit_caps_records_and_pages(engine):
    page = FakePage(pages={PENDING: [[invoice_row(str(n)) for n in range(1, 11)],
                                     [invoice_row(str(n)) for n in range(11, 21)]]})
    orch, _ = _orchestrator(page)

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending, limit=4)

    assert record.results["fetched"] == 4
    assert await _count(ExternalInvoice) == 4


async def test_all_walks_both_invoice_listings(engine):
    page = FakePage(pages={PENDING: [[invoice_row("1")]], CLOSED: [[invoice_row("2")]]})
    orch, _ = _orchestrator(page)

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.all)

    assert record.results["created"] == 2
    async with get_session_context() as db:
        types = dict((await db.execute(select(ExternalInvoice.invoice_number, ExternalInvoice.invoice_type))).all())
    assert types == {"1": "pending", "2": "closed"}


async def test_malformed_rows_are_counted_not_fatal(engine):
    page = FakePage(pages={PENDING: [[invoice_row("1001"), invoice_row("1002", total="forty")]]})
    orch, _ = _orchestrator(page)

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert record.status == FetchStatus.completed
    assert record.results["created"] == 1
    assert record.results["failed"] == 1


async def test_retry_budget_exhausted_marks_record_failed(engine):
    page = FakePage(fail={PENDING: {"load", "commit"}})
    sleeps = []
    orch, session = _orchestrator(page, sleeps=sleeps)

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert record.status == FetchStatus.failed
    assert "All navigation strategies failed" in record.error_message
    assert record.error_details["code"] == "FETCH_RETRYABLE"
    assert sleeps == [5.0, 10.0]
    assert session.opened == 3
    assert await _count(FetchRecord) == 1


async def test_login_redirect_reauthenticates_and_retries(engine):
    page = FakePage(pages={PENDING: [[invoice_row("1001")]]}, redirect_to_login=1)
    orch, session = _orchestrator(page)

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert record.status == FetchStatus.completed
    assert session.reauthenticated == 1
    assert record.results["created"] == 1


async def test_login_error_is_not_retried(engine):
    page = FakePage()
    orch, session = _orchestrator(page)

    async def bad_open():
        raise LoginError("RouteStar credentials are not configured")

    session.open = bad_open

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert record.status == FetchStatus.failed
    assert record.error_details["code"] == "LOGIN_FAILED"


async def test_concurrent_request_conflicts_without_second_record(engine):
    page = FakePage(pages={PENDING: [[invoice_row("1001")]]})
    orch, _ = _orchestrator(page)
    lock = orch._lock(FetchSource.routestar_invoices)
    await lock.acquire()
    try:
        with pytest.raises(SyncInProgressError):
            await orch.start_fetch(FetchSource.routestar_invoices)
    finally:
        lock.release()

    assert await _count(FetchRecord) == 0


async def test_in_progress_record_from_another_worker_conflicts(engine):
    async with get_session_context() as db:
        await FetchHistoryService(db).start(FetchSource.customer_connect, FetchKind.all, TriggeredBy.scheduled)

    orch, _ = _orchestrator(FakePage())
    orch.portal_factory = lambda source: _customer_connect()

    with pytest.raises(SyncInProgressError):
        await orch.run_fetch(FetchSource.customer_connect)

    assert await _count(FetchRecord) == 1
    assert not orch.is_running(FetchSource.customer_connect)


async def _cancel_active_fetches(reason):
    async with get_session_context() as db:
        history = FetchHistoryService(db)
        for record in await history.active():
            await history.cancel(record.id, "ops", reason)


async def test_operator_cancel_during_fetch_keeps_cancelled_outcome(engine):
    page = FakePage(pages={PENDING: [[invoice_row("1001")]]})
    orch, session = _orchestrator(page)
    open_page = session.open

    async def open_after_cancel():
        await _cancel_active_fetches("browser hung")
        return await open_page()

    session.open = open_after_cancel

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert record.status == FetchStatus.cancelled
    assert record.error_message == "browser hung"
    assert await _count(ExternalInvoice) == 1
    assert not orch.is_running(FetchSource.routestar_invoices)


async def test_failure_after_operator_cancel_keeps_cancelled_outcome(engine):
    orch, session = _orchestrator(FakePage())

    async def open_then_fail():
        await _cancel_active_fetches("stuck")
        raise LoginError("bad credentials")

    session.open = open_then_fail

    record = await orch.run_fetch(FetchSource.routestar_invoices, FetchKind.pending)

    assert record.status == FetchStatus.cancelled
    assert record.error_details == {"cancelled_by": "ops"}


def _customer_connect():
    from stock_hub.automation.portals import customer_connect
    portal = customer_connect()
    portal.base_url = BASE
    return portal


def test_resolve_kinds_rejects_unsupported_kind():
    with pytest.raises(InvariantViolation):
        resolve_kinds(_portal(), FetchKind.items)
    assert resolve_kinds(_portal(), None) == [FetchKind.pending]
    assert resolve_kinds(_portal(), FetchKind.all) == [FetchKind.pending, FetchKind.closed]
