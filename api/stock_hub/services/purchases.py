# stock_hub/services/purchases.py
"""
Purchase ledger and the two-phase deletion workflow.

Deletion states: none -> pending -> approved (row removed) | rejected.
A rejected purchase may be requested again. Only approval touches stock.
"""
from __future__ import annotations
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import (
    Purchase, DeletionStatus, StockAction, MovementType, MovementRefType, AuditAction, utcnow,
)
from stock_hub.errors import (
    NotFoundError, InvariantViolation, PartiallyConsumedError,
    DeletionAlreadyPendingError, DeletionNotPendingError,
)
from stock_hub.services.audit import record_audit
from stock_hub.services.reconciliation import PurchaseBatch, weighted_average_cost
from stock_hub.services.stock import StockLedger

logger = logging.getLogger(__name__)

_EDITABLE = ("purchase_price", "selling_price", "purchase_date", "supplier_name",
             "batch_number", "invoice_number", "notes")


class PurchaseService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.stock = StockLedger(db)

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_purchase(self, purchase_id: int) -> Purchase:
        p = await self.db.get(Purchase, purchase_id)
        if p is None:
            raise NotFoundError(f"Purchase {purchase_id} not found")
        return p

    async def _require_owner(self, p: Purchase):
        if p.inventory_item_id is None:
            raise NotFoundError(
                f"Inventory item for purchase {p.id} no longer exists", code="INVENTORY_NOT_FOUND"
            )
        return await self.stock.get_item(p.inventory_item_id)

    async def list_pending_deletions(self, page: int = 1, limit: int = 20) -> Tuple[List[Purchase], int]:
        base = select(Purchase).where(Purchase.deletion_status == DeletionStatus.pending)
        total = (await self.db.execute(select(func.count()).select_from(base.subquery()))).scalar_one()
        result = await self.db.execute(
            base.order_by(Purchase.deletion_requested_at.desc(), Purchase.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_for_item(self, item_id: int) -> List[Purchase]:
        result = await self.db.execute(
            select(Purchase)
            .where(Purchase.inventory_item_id == item_id)
            .order_by(Purchase.purchase_date, Purchase.id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Create / update
    # =========================================================================

    async def create_purchase(self, data: Dict[str, Any], actor_id: str) -> Purchase:
        item = await self.stock.get_item(data["inventory_item_id"])
        quantity = Decimal(data["quantity"])

        p = Purchase(
            inventory_item_id=item.id,
            purchase_date=data.get("purchase_date") or date.today(),
            quantity=quantity,
            remaining_quantity=quantity,
            unit=data.get("unit") or item.unit,
            purchase_price=Decimal(data["purchase_price"]),
            selling_price=data.get("selling_price"),
            supplier_name=data.get("supplier_name"),
            batch_number=data.get("batch_number"),
            invoice_number=data.get("invoice_number"),
            notes=data.get("notes"),
            created_by=actor_id,
        )
        self.db.add(p)
        await self.db.flush()

        await self.stock.apply_stock_delta(
            item.id, quantity, f"Purchase #{p.id} received", actor_id,
            action=StockAction.added, movement_type=MovementType.IN,
            ref_type=MovementRefType.PURCHASE, ref_id=str(p.id),
            source_ref=p.invoice_number,
        )
        if p.selling_price is not None:
            item.selling_price = p.selling_price
        await self.refresh_item_cost(item.id)
        await record_audit(self.db, AuditAction.CREATE, "purchase", p.id, actor_id,
                           {"item_id": item.id, "quantity": str(quantity), "price": str(p.purchase_price)})
        logger.info(f"Purchase #{p.id} created for {item.sku}: {quantity} @ {p.purchase_price} by {actor_id}")
        return p

    async def update_purchase(self, purchase_id: int, changes: Dict[str, Any], actor_id: str) -> Purchase:
        """
        Apply field edits. A quantity change moves stock by exactly the
        difference in ordered quantity; remaining becomes
        max(0, new quantity - consumed).
        """
        p = await self.get_purchase(purchase_id)
        if p.deletion_status == DeletionStatus.pending:
            raise InvariantViolation(
                f"Purchase {p.id} has a pending deletion request", code="PURCHASE_DELETION_PENDING"
            )
        item = await self._require_owner(p)

        before = {"quantity": str(p.quantity), "purchase_price": str(p.purchase_price)}
        for field in _EDITABLE:
            if changes.get(field) is not None:
                setattr(p, field, changes[field])

        new_qty = changes.get("quantity")
        if new_qty is not None and Decimal(new_qty) != Decimal(p.quantity):
            old_qty = Decimal(p.quantity)
            new_qty = Decimal(new_qty)
            consumed = p.consumed_quantity
            p.quantity = new_qty
            p.remaining_quantity = max(Decimal("0"), new_qty - consumed)
            reason = changes.get("reason") or f"Purchase #{p.id} quantity {old_qty} -> {new_qty}"
            await self.stock.apply_stock_delta(
                item.id, new_qty - old_qty, reason, actor_id,
                action=StockAction.adjusted, movement_type=MovementType.ADJUST,
                ref_type=MovementRefType.PURCHASE, ref_id=str(p.id),
            )

        p.updated_by = actor_id
        await self.db.flush()
        await self.refresh_item_cost(item.id)
        await record_audit(self.db, AuditAction.UPDATE, "purchase", p.id, actor_id,
                           {"before": before, "after": {"quantity": str(p.quantity), "purchase_price": str(p.purchase_price)}})
        return p

    async def consume(self, item_id: int, quantity: Decimal) -> Decimal:
        """FIFO decrement of remaining quantity; returns how much was covered by batches."""
        left = Decimal(quantity)
        for p in await self.list_for_item(item_id):
            if left <= 0:
                break
            if p.remaining_quantity <= 0 or p.deletion_status == DeletionStatus.pending:
                continue
            take = min(Decimal(p.remaining_quantity), left)
            p.remaining_quantity = Decimal(p.remaining_quantity) - take
            left -= take
        await self.db.flush()
        return Decimal(quantity) - left

    async def refresh_item_cost(self, item_id: int) -> Optional[Decimal]:
        """Store the weighted average over remaining batches as the item's purchase price."""
        purchases = await self.list_for_item(item_id)
        if not purchases:
            return None
        cost = weighted_average_cost([
            PurchaseBatch(name="", quantity=p.quantity, unit_price=p.purchase_price, remaining=p.remaining_quantity)
            for p in purchases
        ])
        item = await self.stock.get_item(item_id)
        item.purchase_price = cost
        return cost

    # =========================================================================
    # Deletion workflow
    # =========================================================================

    async def request_deletion(self, purchase_id: int, reason: str, actor_id: str) -> Purchase:
        p = await self.get_purchase(purchase_id)
        await self._require_owner(p)

        if p.deletion_status == DeletionStatus.pending:
            raise DeletionAlreadyPendingError(f"Deletion of purchase {p.id} is already pending")
        if Decimal(p.remaining_quantity) < Decimal(p.quantity):
            raise PartiallyConsumedError(
                f"Purchase {p.id} is partially consumed ({p.consumed_quantity} of {p.quantity}); "
                f"reverse the consumption before deleting",
                details={"quantity": str(p.quantity), "remaining_quantity": str(p.remaining_quantity)},
            )

        p.deletion_status = DeletionStatus.pending
        p.deletion_reason = reason
        p.deletion_requested_by = actor_id
        p.deletion_requested_at = utcnow()
        p.deletion_rejected_by = None
        p.deletion_rejected_at = None
        await self.db.flush()
        await record_audit(self.db, AuditAction.DELETE_REQUEST, "purchase", p.id, actor_id, {"reason": reason})
        logger.info(f"Deletion requested for purchase #{p.id} by {actor_id}: {reason}")
        return p

    async def approve_deletion(self, purchase_id: int, actor_id: str, note: Optional[str] = None) -> Dict[str, Any]:
        """
        Reverse the purchase's stock and delete the row.

        Runs inside the caller's transaction; a failure anywhere leaves both
        the quantity and the row untouched once the session rolls back.
        """
        p = await self.get_purchase(purchase_id)
        if p.deletion_status != DeletionStatus.pending:
            raise DeletionNotPendingError(
                f"Purchase {p.id} is not pending deletion (status: {p.deletion_status.value})"
            )
        item = await self._require_owner(p)

        p.deletion_status = DeletionStatus.approved
        p.deletion_approved_by = actor_id
        p.deletion_approved_at = utcnow()

        delta = await self.stock.apply_stock_delta(
            item.id, -Decimal(p.quantity),
            f"Purchase #{p.id} deleted: {p.deletion_reason or ''}".strip(), actor_id,
            action=StockAction.removed, movement_type=MovementType.OUT,
            ref_type=MovementRefType.DELETION, ref_id=str(p.id),
        )
        snapshot = {
            "purchase_id": p.id,
            "item_id": item.id,
            "quantity": str(p.quantity),
            "purchase_price": str(p.purchase_price),
            "reason": p.deletion_reason,
            "requested_by": p.deletion_requested_by,
            "note": note,
        }
        await record_audit(self.db, AuditAction.DELETE_APPROVE, "purchase", p.id, actor_id, snapshot)
        await self.db.delete(p)
        await self.db.flush()
        await self.refresh_item_cost(item.id)

        logger.info(f"Deletion of purchase #{snapshot['purchase_id']} approved by {actor_id}; "
                    f"{item.sku} {delta.previous_quantity} -> {delta.new_quantity}")
        return {
            "purchase_id": snapshot["purchase_id"],
            "item_id": item.id,
            "previous_quantity": delta.previous_quantity,
            "new_quantity": delta.new_quantity,
        }

    async def reject_deletion(self, purchase_id: int, actor_id: str, note: Optional[str] = None) -> Purchase:
        p = await self.get_purchase(purchase_id)
        if p.deletion_status != DeletionStatus.pending:
            raise DeletionNotPendingError(
                f"Purchase {p.id} is not pending deletion (status: {p.deletion_status.value})"
            )
        await self._require_owner(p)

        p.deletion_status = DeletionStatus.rejected
        p.deletion_rejected_by = actor_id
        p.deletion_rejected_at = utcnow()
        await self.db.flush()
        await record_audit(self.db, AuditAction.DELETE_REJECT, "purchase", p.id, actor_id,
                           {"reason": p.deletion_reason, "note": note})
        logger.info(f"Deletion of purchase #{p.id} rejected by {actor_id}")
        return p
