# stock_hub/services/stock.py
"""
Stock ledger - the only code path that changes InventoryItem.quantity_current.

Every change appends a stock_history row and a stock_movements row in the
same transaction as the quantity update. Writers on the same item serialize
on a per-item asyncio lock plus a SELECT ... FOR UPDATE row lock (the row lock
is a no-op on SQLite).
"""
from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import (
    InventoryItem, StockHistoryEntry, StockMovement, StockAction, MovementType, MovementRefType,
    AuditAction, utcnow,
)
from stock_hub.errors import NotFoundError, ConflictError
from stock_hub.services.audit import record_audit

logger = logging.getLogger(__name__)

# item id -> [lock, holders and waiters]; an entry lives only while someone uses it
_item_locks: Dict[int, list] = {}


@asynccontextmanager
async def item_lock(item_id: int):
    entry = _item_locks.setdefault(item_id, [asyncio.Lock(), 0])
    entry[1] += 1
    try:
        async with entry[0]:
            yield
    finally:
        entry[1] -= 1
        if entry[1] == 0:
            del _item_locks[item_id]


@dataclass
class StockDelta:
    """What one apply_stock_delta call did."""
    item: InventoryItem
    previous_quantity: Decimal
    new_quantity: Decimal
    history: Optional[StockHistoryEntry] = None
    movement: Optional[StockMovement] = None


class StockLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_item(self, item_id: int, for_update: bool = False) -> InventoryItem:
        stmt = select(InventoryItem).where(InventoryItem.id == item_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        item = (await self.db.execute(stmt)).scalar_one_or_none()
        if item is None:
            raise NotFoundError(f"Inventory item {item_id} not found", code="INVENTORY_NOT_FOUND")
        return item

    async def find_item(self, name_or_sku: str) -> Optional[InventoryItem]:
        """Case-insensitive match on SKU or name."""
        key = (name_or_sku or "").strip().lower()
        if not key:
            return None
        result = await self.db.execute(
            select(InventoryItem)
            .where(or_(func.lower(InventoryItem.sku) == key, func.lower(InventoryItem.name) == key))
            .order_by(InventoryItem.id)
        )
        return result.scalars().first()

    async def create_item(self, sku: str, name: str, actor_id: str, unit: str = "pcs",
                          quantity_minimum: Decimal = Decimal("0"),
                          selling_price: Optional[Decimal] = None) -> InventoryItem:
        sku_norm = (sku or "").strip().upper()
        existing = await self.db.execute(select(InventoryItem.id).where(InventoryItem.sku == sku_norm))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"SKU '{sku_norm}' already exists", code="SKU_EXISTS")
        item = InventoryItem(
            sku=sku_norm,
            name=name.strip(),
            unit=unit,
            quantity_current=Decimal("0"),
            quantity_minimum=quantity_minimum,
            selling_price=selling_price,
        )
        self.db.add(item)
        await self.db.flush()
        await record_audit(self.db, AuditAction.CREATE, "inventory_item", item.id, actor_id, {"sku": item.sku})
        return item

    async def apply_stock_delta(
        self,
        item_id: int,
        delta: Decimal,
        reason: str,
        actor_id: str,
        *,
        action: Optional[StockAction] = None,
        movement_type: Optional[MovementType] = None,
        ref_type: MovementRefType = MovementRefType.ADJUSTMENT,
        ref_id: Optional[str] = None,
        source_ref: Optional[str] = None,
    ) -> StockDelta:
        """
        Add ``delta`` (may be negative) to the item's current quantity.

        History entry and movement are appended before the quantity is
        written; a zero delta changes nothing and records nothing.

        Raises:
            NotFoundError: the item does not exist (code INVENTORY_NOT_FOUND)
        """
        delta = Decimal(delta)
        async with item_lock(item_id):
            item = await self.get_item(item_id, for_update=True)
            previous = Decimal(item.quantity_current)
            new = previous + delta
            if delta == 0:
                return StockDelta(item=item, previous_quantity=previous, new_quantity=previous)

            if action is None:
                action = StockAction.added if delta > 0 else StockAction.removed
            if movement_type is None:
                movement_type = MovementType.IN if delta > 0 else MovementType.OUT

            history = StockHistoryEntry(
                item_id=item.id,
                action=action,
                quantity=delta,
                previous_quantity=previous,
                new_quantity=new,
                reason=reason,
                actor_id=actor_id,
            )
            movement = StockMovement(
                sku=item.sku,
                movement_type=movement_type,
                # IN/OUT carry magnitudes, ADJUST keeps the sign
                quantity=delta if movement_type == MovementType.ADJUST else abs(delta),
                ref_type=ref_type,
                ref_id=ref_id,
                source_ref=source_ref,
                notes=reason,
                created_by=actor_id,
            )
            self.db.add_all([history, movement])
            item.quantity_current = new
            if ref_type in (MovementRefType.INVOICE, MovementRefType.PURCHASE_ORDER):
                item.last_synced_at = utcnow()
            await self.db.flush()

        logger.info(f"Stock {item.sku}: {previous} -> {new} ({delta:+}) [{movement_type.value}/{ref_type.value} {ref_id or ''}] by {actor_id}")
        return StockDelta(item=item, previous_quantity=previous, new_quantity=new, history=history, movement=movement)

    async def history(self, item_id: int, limit: int = 100):
        result = await self.db.execute(
            select(StockHistoryEntry)
            .where(StockHistoryEntry.item_id == item_id)
            .order_by(StockHistoryEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
