# stock_hub/routers/item_alias.py
"""
Item Alias Router - canonical item identities and their aliases.

Writes require the admin role; suggestions are advisory and never merge
anything on their own.
"""
from __future__ import annotations
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.database import get_session
from stock_hub.deps import require_admin
from stock_hub.models import AliasIn, MappingIn, MappingUpdate, MappingOut
from stock_hub.services.canonical import CanonicalService

router = APIRouter(prefix="/item-alias", tags=["Item Alias"])


@router.post("/mapping", response_model=MappingOut)
async def upsert_mapping(
    body: MappingIn,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """Create a mapping or add aliases to it (409 if an alias belongs elsewhere)."""
    mapping = await CanonicalService(db).upsert_mapping(
        body.canonical_name, body.aliases, actor, description=body.description,
    )
    return MappingOut.from_row(mapping)


@router.put("/mapping/{canonical_name}", response_model=MappingOut)
async def update_mapping(
    canonical_name: str,
    body: MappingUpdate,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """Replace the alias set and/or description; ``active`` toggles the mapping."""
    svc = CanonicalService(db)
    mapping = await svc.require_mapping(canonical_name)
    if body.aliases is not None or body.description is not None:
        # editing aliases does not re-activate unless asked
        mapping = await svc.upsert_mapping(
            mapping.canonical_name,
            body.aliases if body.aliases is not None else mapping.alias_names,
            actor,
            description=body.description,
            replace=body.aliases is not None,
            reactivate=bool(body.active),
        )
    if body.active is not None and body.active != mapping.active:
        mapping = await svc.set_active(mapping.canonical_name, body.active, actor)
    return MappingOut.from_row(mapping)


@router.post("/mapping/{canonical_name}/aliases", response_model=MappingOut)
async def add_alias(
    canonical_name: str,
    body: AliasIn,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    mapping = await CanonicalService(db).add_alias(canonical_name, body.name, actor, notes=body.notes)
    return MappingOut.from_row(mapping)


@router.delete("/mapping/{canonical_name}/aliases/{alias}", response_model=MappingOut)
async def remove_alias(
    canonical_name: str,
    alias: str,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    mapping = await CanonicalService(db).remove_alias(canonical_name, alias, actor)
    return MappingOut.from_row(mapping)


@router.delete("/mapping/{canonical_name}")
async def delete_mapping(
    canonical_name: str,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    await CanonicalService(db).delete_mapping(canonical_name, actor)
    return {"success": True, "canonical_name": canonical_name}


@router.get("/mappings", response_model=List[MappingOut])
async def list_mappings(
    include_inactive: bool = True,
    db: AsyncSession = Depends(get_session),
):
    mappings = await CanonicalService(db).list_mappings(include_inactive=include_inactive)
    return [MappingOut.from_row(m) for m in mappings]


@router.get("/suggestions")
async def suggestions(db: AsyncSession = Depends(get_session)):
    return await CanonicalService(db).suggest_mappings()


@router.get("/unique-items")
async def unique_items(db: AsyncSession = Depends(get_session)):
    return await CanonicalService(db).unique_items()


@router.get("/resolve")
async def resolve(name: str = Query(..., min_length=1), db: AsyncSession = Depends(get_session)):
    canonical = await CanonicalService(db).resolve(name)
    return {"name": name, "canonical_name": canonical}
