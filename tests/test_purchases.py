from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import delete, select, update

from stock_hub.database import get_session_context
from stock_hub.db_models import (
    AuditLog, AuditAction, DeletionStatus, InventoryItem, MovementRefType, Purchase, StockHistoryEntry,
    StockMovement,
)
from stock_hub.errors import (
    DeletionAlreadyPendingError, DeletionNotPendingError, InvariantViolation, NotFoundError,
    PartiallyConsumedError,
)
from stock_hub.models import PurchaseIn
from stock_hub.services import stock
from stock_hub.services.purchases import PurchaseService
from stock_hub.services.stock import StockLedger

from conftest import make_item, make_purchase


async def _history_sum(db, item_id):
    rows = (await db.execute(select(StockHistoryEntry.quantity).where(StockHistoryEntry.item_id == item_id))).scalars()
    return sum(rows, Decimal("0"))


async def test_create_purchase_adds_stock_history_and_movement(db):
    item = await make_item(db)

    p = await make_purchase(db, item.id, 100, "2.00", invoice_number="INV-9")

    assert item.quantity_current == Decimal("100")
    assert p.remaining_quantity == Decimal("100")
    mv = (await db.execute(select(StockMovement))).scalar_one()
    assert (mv.ref_type, mv.ref_id, mv.source_ref) == (MovementRefType.PURCHASE, str(p.id), "INV-9")
    assert item.purchase_price == Decimal("2.00")


async def test_create_purchase_for_missing_item_is_not_found(db):
    with pytest.raises(NotFoundError) as exc:
        await make_purchase(db, 999, 1, "1")
    assert exc.value.code == "INVENTORY_NOT_FOUND"


async def test_update_quantity_moves_stock_by_the_difference(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 100, "2.00")
    await PurchaseService(db).consume(item.id, Decimal("30"))

    await PurchaseService(db).update_purchase(p.id, {"quantity": Decimal("80"), "reason": "miscount"}, "clerk")

    assert item.quantity_current == Decimal("80")
    assert p.remaining_quantity == Decimal("50")
    adjust = (await db.execute(
        select(StockMovement).where(StockMovement.notes == "miscount")
    )).scalar_one()
    assert adjust.quantity == Decimal("-20")


async def test_shrinking_below_consumed_clamps_remaining_at_zero(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 10, "2.00")
    await PurchaseService(db).consume(item.id, Decimal("8"))

    await PurchaseService(db).update_purchase(p.id, {"quantity": Decimal("5")}, "clerk")

    assert p.remaining_quantity == Decimal("0")


async def test_request_deletion_leaves_quantity_untouched(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 50, "3.00")

    await PurchaseService(db).request_deletion(p.id, "duplicate entry", "clerk")

    assert p.deletion_status == DeletionStatus.pending
    assert p.deletion_requested_by == "clerk"
    assert item.quantity_current == Decimal("50")


async def test_partially_consumed_purchase_cannot_be_requested(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 50, "3.00")
    await PurchaseService(db).consume(item.id, Decimal("1"))

    with pytest.raises(PartiallyConsumedError):
        await PurchaseService(db).request_deletion(p.id, "oops", "clerk")
    assert p.deletion_status == DeletionStatus.none


async def test_second_request_conflicts(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 5, "1.00")
    svc = PurchaseService(db)
    await svc.request_deletion(p.id, "dup", "clerk")

    with pytest.raises(DeletionAlreadyPendingError):
        await svc.request_deletion(p.id, "dup again", "clerk")


async def test_approve_subtracts_quantity_audits_and_deletes(db):
    item = await make_item(db)
    await make_purchase(db, item.id, 20, "1.00")
    p = await make_purchase(db, item.id, 50, "3.00")
    svc = PurchaseService(db)
    await svc.request_deletion(p.id, "duplicate", "clerk")

    result = await svc.approve_deletion(p.id, "boss")

    assert result["previous_quantity"] == Decimal("70")
    assert result["new_quantity"] == Decimal("20")
    assert item.quantity_current == Decimal("20")
    assert await db.get(Purchase, result["purchase_id"]) is None
    audit = (await db.execute(select(AuditLog).where(AuditLog.action == AuditAction.DELETE_APPROVE))).scalar_one()
    assert audit.actor_id == "boss"
    assert Decimal(audit.details["quantity"]) == Decimal("50")
    # quantity stays consistent with the history ledger
    assert await _history_sum(db, item.id) == item.quantity_current
    assert item.purchase_price == Decimal("1")


async def test_reject_keeps_quantity_and_allows_resubmission(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 50, "3.00")
    svc = PurchaseService(db)
    await svc.request_deletion(p.id, "dup", "clerk")

    await svc.reject_deletion(p.id, "boss")
    assert p.deletion_status == DeletionStatus.rejected
    assert item.quantity_current == Decimal("50")

    await svc.request_deletion(p.id, "really a dup", "clerk")
    assert p.deletion_status == DeletionStatus.pending


async def test_decisions_on_non_pending_purchase_are_invariant_violations(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 5, "1.00")
    svc = PurchaseService(db)

    with pytest.raises(DeletionNotPendingError):
        await svc.approve_deletion(p.id, "boss")
    with pytest.raises(DeletionNotPendingError):
        await svc.reject_deletion(p.id, "boss")
    with pytest.raises(NotFoundError):
        await svc.approve_deletion(12345, "boss")


async def test_edit_blocked_while_deletion_pending(db):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 5, "1.00")
    svc = PurchaseService(db)
    await svc.request_deletion(p.id, "dup", "clerk")

    with pytest.raises(InvariantViolation):
        await svc.update_purchase(p.id, {"quantity": Decimal("6")}, "clerk")


async def test_pending_deletions_are_paginated(db):
    item = await make_item(db)
    svc = PurchaseService(db)
    for n in range(3):
        p = await make_purchase(db, item.id, 1 + n, "1.00")
        await svc.request_deletion(p.id, f"dup {n}", "clerk")

    rows, total = await svc.list_pending_deletions(page=2, limit=2)

    assert total == 3
    assert len(rows) == 1


async def test_zero_delta_records_nothing(db):
    item = await make_item(db)

    delta = await StockLedger(db).apply_stock_delta(item.id, Decimal("0"), "noop", "clerk")

    assert delta.history is None
    assert (await db.execute(select(StockMovement))).scalars().all() == []


async def test_concurrent_deltas_on_one_item_do_not_lose_updates(engine):
    async with get_session_context() as db:
        item_id = (await make_item(db)).id

    async with get_session_context() as first, get_session_context() as second:
        await asyncio.gather(
            StockLedger(first).apply_stock_delta(item_id, Decimal("5"), "delivery A", "clerk"),
            StockLedger(second).apply_stock_delta(item_id, Decimal("3"), "delivery B", "clerk"),
        )

    async with get_session_context() as db:
        item = await StockLedger(db).get_item(item_id)
        rows = (await db.execute(
            select(StockHistoryEntry).where(StockHistoryEntry.item_id == item_id).order_by(StockHistoryEntry.id)
        )).scalars().all()

    assert item.quantity_current == Decimal("8")
    assert len(rows) == 2
    assert rows[1].previous_quantity == rows[0].new_quantity
    assert rows[1].new_quantity == Decimal("8")
    assert stock._item_locks == {}


@pytest.mark.parametrize("decision", ["approve_deletion", "reject_deletion"])
async def test_decision_on_purchase_whose_item_is_gone(db, decision):
    item = await make_item(db)
    p = await make_purchase(db, item.id, 5, "1.00")
    svc = PurchaseService(db)
    await svc.request_deletion(p.id, "dup", "clerk")
    await db.execute(update(Purchase).where(Purchase.id == p.id).values(inventory_item_id=None))
    await db.execute(delete(InventoryItem).where(InventoryItem.id == item.id))

    with pytest.raises(NotFoundError) as exc:
        await getattr(svc, decision)(p.id, "boss")

    assert exc.value.code == "INVENTORY_NOT_FOUND"
    row = (await db.execute(select(Purchase).where(Purchase.id == p.id))).scalar_one()
    assert row.deletion_status == DeletionStatus.pending
    assert row.deletion_approved_by is None
    assert row.deletion_rejected_by is None


async def test_purchase_without_unit_takes_the_item_unit(db):
    item = await StockLedger(db).create_item("RYE-1", "Rye", "tester", unit="kg")

    p = await make_purchase(db, item.id, 2, "3.00", unit=None)

    assert p.unit == "kg"
    assert PurchaseIn(inventory_item_id=item.id, quantity=2, purchase_price=3).unit is None
