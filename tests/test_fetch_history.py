from __future__ import annotations

from datetime import timedelta

import pytest

from stock_hub.automation.retry import backoff_delay, retry_async
from stock_hub.db_models import FetchKind, FetchSource, FetchStatus, TriggeredBy, utcnow
from stock_hub.errors import (
    AuthRedirectError, InvariantViolation, LoginError, NotFoundError, RetryableFetchError,
)
from stock_hub.services.fetch_history import FetchHistoryService, success_rate

RS = FetchSource.routestar_invoices


async def test_record_is_finalized_exactly_once(db):
    history = FetchHistoryService(db)
    record = await history.start(RS, FetchKind.pending, TriggeredBy.api, {"limit": 5})

    assert record.status == FetchStatus.in_progress
    assert record.results == {"fetched": 0, "created": 0, "updated": 0, "failed": 0, "skipped": 0}

    await history.complete(record.id, {"fetched": 3, "created": 3})
    assert record.status == FetchStatus.completed
    assert record.results["updated"] == 0
    assert record.duration_ms is not None

    with pytest.raises(InvariantViolation) as exc:
        await history.fail(record.id, "late failure")
    assert exc.value.code == "FETCH_ALREADY_FINALIZED"


async def test_cancel_marks_stuck_record(db):
    history = FetchHistoryService(db)
    record = await history.start(RS, FetchKind.pending)
    record.started_at = utcnow() - timedelta(hours=3)
    await db.flush()

    assert [r.id for r in await history.stuck()] == [record.id]

    await history.cancel(record.id, "ops", "browser hung")

    assert record.status == FetchStatus.cancelled
    assert record.error_message == "browser hung"
    assert record.error_details == {"cancelled_by": "ops"}
    assert await history.stuck() == []

    with pytest.raises(NotFoundError):
        await history.cancel(9999, "ops")


async def test_statistics_count_per_source_and_status(db):
    history = FetchHistoryService(db)
    for _ in range(3):
        r = await history.start(RS, FetchKind.pending)
        await history.complete(r.id, {"fetched": 1})
    r = await history.start(RS, FetchKind.pending)
    await history.fail(r.id, "timeout")
    await history.start(FetchSource.customer_connect, FetchKind.all)

    stats = await history.statistics(days=7)

    assert (stats["total"], stats["completed"], stats["failed"], stats["in_progress"]) == (5, 3, 1, 1)
    assert stats["success_rate"] == 75.0
    assert stats["by_source"]["routestar_invoices"]["success_rate"] == 75.0
    assert stats["by_source"]["customer_connect"]["success_rate"] is None


async def test_recent_is_newest_first_and_filters(db):
    history = FetchHistoryService(db)
    first = await history.start(RS, FetchKind.pending)
    second = await history.start(FetchSource.routestar_items, FetchKind.items)

    assert [r.id for r in await history.recent()] == [second.id, first.id]
    assert [r.id for r in await history.recent(source=RS)] == [first.id]
    assert (await history.last_by_source())["customer_connect"] is None


async def test_purge_removes_only_expired_records(db):
    history = FetchHistoryService(db)
    old = await history.start(RS, FetchKind.pending)
    keep = await history.start(RS, FetchKind.pending)
    old.expires_at = utcnow() - timedelta(days=1)
    await db.flush()

    purged = await history.purge_expired()

    assert purged == 1
    assert [r.id for r in await history.recent()] == [keep.id]


def test_success_rate():
    assert success_rate(0, 0) is None
    assert success_rate(2, 1) == 66.67


# ============================================================================
# Retry
# ============================================================================

def test_backoff_doubles():
    assert [backoff_delay(5.0, n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]


async def test_retry_runs_hook_before_sleeping_and_succeeds():
    events = []

    async def operation(attempt):
        events.append(("op", attempt))
        if attempt < 3:
            raise AuthRedirectError("https://portal.test/web/login/")
        return "ok"

    async def on_retry(attempt, error):
        events.append(("retry", attempt))

    async def sleep(seconds):
        events.append(("sleep", seconds))

    result = await retry_async(operation, attempts=3, base_delay_s=1.0, on_retry=on_retry, sleep=sleep)

    assert result == "ok"
    assert events == [
        ("op", 1), ("retry", 1), ("sleep", 1.0),
        ("op", 2), ("retry", 2), ("sleep", 2.0),
        ("op", 3),
    ]


async def test_retry_gives_up_and_reraises_last_error():
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        raise RetryableFetchError(f"timeout {attempt}")

    async def sleep(seconds):
        pass

    with pytest.raises(RetryableFetchError, match="timeout 2"):
        await retry_async(operation, attempts=2, base_delay_s=0.1, sleep=sleep)
    assert calls == [1, 2]


async def test_non_retryable_errors_propagate_immediately():
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        raise LoginError("bad credentials")

    with pytest.raises(LoginError):
        await retry_async(operation, attempts=3, base_delay_s=0.1)
    assert calls == [1]
