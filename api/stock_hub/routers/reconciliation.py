# stock_hub/routers/reconciliation.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.database import get_session
from stock_hub.services.reconciliation import ReconciliationService

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


@router.get("")
async def reconciliation(db: AsyncSession = Depends(get_session)):
    """Purchased vs sold per item identity, sorted by current stock ascending."""
    report = await ReconciliationService(db).build_report()
    return report.to_dict()


@router.get("/pricing")
async def pricing(db: AsyncSession = Depends(get_session)):
    return {"items": await ReconciliationService(db).pricing_table()}
