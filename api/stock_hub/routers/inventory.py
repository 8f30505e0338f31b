# stock_hub/routers/inventory.py
"""
Inventory Router - minimal owning-record creation, stock folding and history.
"""
from __future__ import annotations
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.database import get_session
from stock_hub.deps import get_actor
from stock_hub.models import InventoryItemIn, InventoryItemOut
from stock_hub.services.stock import StockLedger
from stock_hub.services.stock_processor import StockProcessor

router = APIRouter(tags=["Inventory"])


@router.post("/inventory", response_model=InventoryItemOut, status_code=201)
async def create_item(
    body: InventoryItemIn,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    return await StockLedger(db).create_item(
        body.sku, body.name, actor,
        unit=body.unit,
        quantity_minimum=body.quantity_minimum,
        selling_price=body.selling_price,
    )


@router.get("/inventory/{item_id}/history")
async def item_history(
    item_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
):
    ledger = StockLedger(db)
    item = await ledger.get_item(item_id)
    entries = await ledger.history(item_id, limit)
    return {
        "item_id": item.id,
        "sku": item.sku,
        "quantity_current": item.quantity_current,
        "history": [
            {
                "action": h.action.value,
                "quantity": h.quantity,
                "previous_quantity": h.previous_quantity,
                "new_quantity": h.new_quantity,
                "reason": h.reason,
                "actor_id": h.actor_id,
                "created_at": h.created_at.isoformat() if h.created_at else None,
            }
            for h in entries
        ],
    }


@router.post("/stock/process")
async def process_stock(
    limit: int = Query(default=0, ge=0),
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    """Fold unprocessed orders (IN) and invoices (OUT) into stock movements."""
    result = await StockProcessor(db, actor_id=actor).process_pending(limit or None)
    return asdict(result)
