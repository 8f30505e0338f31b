# stock_hub/routers/purchases.py
"""
Purchases Router - purchase ledger and the two-phase deletion workflow.

Deletion is request -> approve | reject. Only approval changes stock.
"""
from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.database import get_session
from stock_hub.deps import get_actor, require_admin
from stock_hub.models import (
    PurchaseIn, PurchaseUpdate, PurchaseOut, DeletionRequestIn, DeletionDecisionIn,
)
from stock_hub.services.purchases import PurchaseService

router = APIRouter(prefix="/purchases", tags=["Purchases"])


@router.post("", response_model=PurchaseOut, status_code=201)
async def create_purchase(
    body: PurchaseIn,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    """Record a purchase batch; stock goes up by its quantity."""
    return await PurchaseService(db).create_purchase(body.model_dump(), actor)


@router.put("/{purchase_id}", response_model=PurchaseOut)
async def update_purchase(
    purchase_id: int,
    body: PurchaseUpdate,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    return await PurchaseService(db).update_purchase(purchase_id, body.model_dump(exclude_unset=True), actor)


@router.get("/pending-deletions")
async def pending_deletions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    rows, total = await PurchaseService(db).list_pending_deletions(page, limit)
    return {
        "items": [PurchaseOut.model_validate(p) for p in rows],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.post("/{purchase_id}/delete-request", response_model=PurchaseOut)
async def request_deletion(
    purchase_id: int,
    body: DeletionRequestIn,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    """Ask an admin to delete a purchase; quantity is untouched until approval."""
    return await PurchaseService(db).request_deletion(purchase_id, body.reason, actor)


@router.post("/{purchase_id}/approve")
async def approve_deletion(
    purchase_id: int,
    body: Optional[DeletionDecisionIn] = Body(default=None),
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    result = await PurchaseService(db).approve_deletion(purchase_id, actor, body.reason if body else None)
    return {"success": True, **result}


@router.post("/{purchase_id}/reject", response_model=PurchaseOut)
async def reject_deletion(
    purchase_id: int,
    body: Optional[DeletionDecisionIn] = Body(default=None),
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    return await PurchaseService(db).reject_deletion(purchase_id, actor, body.reason if body else None)
