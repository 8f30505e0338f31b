# stock_hub/services/canonical.py
"""
Item identity canonicalization.

Maps inconsistently spelled external item names onto one canonical name.

Handles:
- alias -> canonical resolution (case-insensitive, cached lookup)
- mapping upserts with alias exclusivity (an alias belongs to one mapping)
- alias add/remove, deactivate, explicit delete
- advisory suggestions for names nothing maps yet (never auto-merged)
"""
from __future__ import annotations
import logging
import re
import time
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import (
    CanonicalMapping, ItemAlias, ExternalItem, ExternalInvoiceLine, ExternalOrderLine,
    AuditAction,
)
from stock_hub.errors import AliasConflictError, NotFoundError
from stock_hub.services.audit import record_audit
from stock_hub.settings import settings

logger = logging.getLogger(__name__)

_NORMALIZE_RE = re.compile(r"[^a-z0-9]+")


def alias_key(name: str) -> str:
    return (name or "").strip().lower()


def normalized_key(name: str) -> str:
    """Looser key used only for suggestions: 'Wheat-Flour 50lb' == 'wheat flour 50 lb'."""
    return _NORMALIZE_RE.sub("", (name or "").lower())


def resolve_name(lookup: Dict[str, str], name: str) -> str:
    """Resolve against a lookup snapshot; unmapped names come back trimmed but unchanged."""
    cleaned = (name or "").strip()
    return lookup.get(alias_key(cleaned), cleaned)


# ============================================================================
# Lookup cache (process-wide, invalidated on every mapping write)
# ============================================================================

class _LookupCache:
    def __init__(self):
        self.lookup: Optional[Dict[str, str]] = None
        self.expires_at = 0.0

    def get(self) -> Optional[Dict[str, str]]:
        if self.lookup is not None and time.monotonic() < self.expires_at:
            return self.lookup
        return None

    def put(self, lookup: Dict[str, str], ttl: float) -> None:
        self.lookup = lookup
        self.expires_at = time.monotonic() + ttl

    def clear(self) -> None:
        self.lookup = None
        self.expires_at = 0.0


_cache = _LookupCache()


def invalidate_lookup_cache() -> None:
    _cache.clear()


class CanonicalService:
    """Canonical mapping store backed by canonical_mappings/item_aliases."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Resolution
    # =========================================================================

    async def build_lookup(self) -> Dict[str, str]:
        """alias_key -> canonical name for active mappings (canonical names map to themselves)."""
        cached = _cache.get()
        if cached is not None:
            return cached

        result = await self.db.execute(
            select(CanonicalMapping).where(CanonicalMapping.active.is_(True))
        )
        lookup: Dict[str, str] = {}
        for m in result.scalars().all():
            lookup[alias_key(m.canonical_name)] = m.canonical_name
            for a in m.aliases:
                lookup[a.alias_key] = m.canonical_name

        _cache.put(lookup, settings.ALIAS_CACHE_TTL_S)
        return lookup

    async def resolve(self, name: str) -> str:
        return resolve_name(await self.build_lookup(), name)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_mapping(self, canonical_name: str) -> Optional[CanonicalMapping]:
        result = await self.db.execute(
            select(CanonicalMapping).where(
                func.lower(CanonicalMapping.canonical_name) == alias_key(canonical_name)
            )
        )
        return result.scalar_one_or_none()

    async def require_mapping(self, canonical_name: str) -> CanonicalMapping:
        mapping = await self.get_mapping(canonical_name)
        if mapping is None:
            raise NotFoundError(f"Mapping '{canonical_name}' not found")
        return mapping

    async def list_mappings(self, include_inactive: bool = True) -> List[CanonicalMapping]:
        stmt = select(CanonicalMapping).order_by(CanonicalMapping.canonical_name)
        if not include_inactive:
            stmt = stmt.where(CanonicalMapping.active.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Writes
    # =========================================================================

    async def _check_conflicts(
        self, canonical_name: str, names: Iterable[str], mapping_id: Optional[int]
    ) -> Dict[str, Tuple[ItemAlias, CanonicalMapping]]:
        """
        Raise if any name is taken by another active mapping.

        Returns aliases with the same keys that belong to inactive mappings;
        the caller takes them over.
        """
        keys = {alias_key(n) for n in names if alias_key(n)}
        keys.add(alias_key(canonical_name))

        conflicts: Dict[str, str] = {}
        claimable: Dict[str, Tuple[ItemAlias, CanonicalMapping]] = {}

        result = await self.db.execute(
            select(ItemAlias, CanonicalMapping)
            .join(CanonicalMapping, ItemAlias.mapping_id == CanonicalMapping.id)
            .where(ItemAlias.alias_key.in_(keys))
        )
        for alias, owner in result.all():
            if owner.id == mapping_id:
                continue
            if owner.active:
                conflicts[alias.name] = owner.canonical_name
            else:
                claimable[alias.alias_key] = (alias, owner)

        # an alias may not be some other active mapping's canonical name
        result = await self.db.execute(
            select(CanonicalMapping.canonical_name, CanonicalMapping.id)
            .where(
                func.lower(CanonicalMapping.canonical_name).in_(keys),
                CanonicalMapping.active.is_(True),
            )
        )
        for owner, owner_id in result.all():
            if owner_id != mapping_id:
                conflicts[owner] = owner

        if conflicts:
            listed = ", ".join(f"'{a}' -> '{c}'" for a, c in sorted(conflicts.items()))
            raise AliasConflictError(
                f"Aliases already mapped elsewhere: {listed}",
                details={"conflicts": conflicts},
            )
        return claimable

    def _release(self, alias: ItemAlias, owner: CanonicalMapping) -> ItemAlias:
        owner.aliases.remove(alias)
        logger.info(f"Alias '{alias.name}' released by inactive mapping {owner.canonical_name}")
        return alias

    async def upsert_mapping(
        self,
        canonical_name: str,
        aliases: List[str],
        actor_id: str,
        description: Optional[str] = None,
        replace: bool = False,
        reactivate: bool = True,
    ) -> CanonicalMapping:
        """
        Create or extend a mapping.

        Aliases the mapping already owns are no-ops. With ``replace`` the
        alias set becomes exactly ``aliases``. Upserting a deactivated
        mapping re-activates it unless ``reactivate`` is False. Aliases
        held by inactive mappings move to this one.

        Raises:
            AliasConflictError: a name belongs to a different active mapping
        """
        canonical_name = canonical_name.strip()
        mapping = await self.get_mapping(canonical_name)
        names = list(aliases)
        if mapping is not None and not mapping.active and reactivate:
            names += mapping.alias_names
        claimable = await self._check_conflicts(canonical_name, names, mapping.id if mapping else None)

        if mapping is None:
            mapping = CanonicalMapping(
                canonical_name=canonical_name,
                description=description,
                created_by=actor_id,
                aliases=[],
            )
            self.db.add(mapping)
        else:
            if reactivate:
                mapping.active = True
            mapping.updated_by = actor_id
            if description is not None:
                mapping.description = description

        wanted: Dict[str, str] = {}
        for name in aliases:
            key = alias_key(name)
            if key and key != alias_key(canonical_name):
                wanted.setdefault(key, name.strip())

        existing = {a.alias_key: a for a in mapping.aliases}
        for key, name in wanted.items():
            if key in existing:
                continue
            if key in claimable:
                alias = self._release(*claimable.pop(key))
                alias.name = name
                mapping.aliases.append(alias)
            else:
                mapping.aliases.append(ItemAlias(name=name, alias_key=key))
        if replace:
            for key, alias in existing.items():
                if key not in wanted:
                    mapping.aliases.remove(alias)

        await self.db.flush()
        invalidate_lookup_cache()
        await record_audit(
            self.db, AuditAction.MAPPING_UPSERT, "canonical_mapping", mapping.id, actor_id,
            {"canonical_name": mapping.canonical_name, "aliases": mapping.alias_names},
        )
        logger.info(f"Mapping upserted: {mapping.canonical_name} <- {mapping.alias_names} by {actor_id}")
        return mapping

    async def add_alias(self, canonical_name: str, alias: str, actor_id: str, notes: Optional[str] = None) -> CanonicalMapping:
        mapping = await self.require_mapping(canonical_name)
        key = alias_key(alias)
        if key in {a.alias_key for a in mapping.aliases} or key == alias_key(mapping.canonical_name):
            return mapping
        claimable = await self._check_conflicts(mapping.canonical_name, [alias], mapping.id)
        if key in claimable:
            taken = self._release(*claimable[key])
            taken.name = alias.strip()
            taken.notes = notes
            mapping.aliases.append(taken)
        else:
            mapping.aliases.append(ItemAlias(name=alias.strip(), alias_key=key, notes=notes))
        mapping.updated_by = actor_id
        await self.db.flush()
        invalidate_lookup_cache()
        return mapping

    async def remove_alias(self, canonical_name: str, alias: str, actor_id: str) -> CanonicalMapping:
        mapping = await self.require_mapping(canonical_name)
        key = alias_key(alias)
        match = next((a for a in mapping.aliases if a.alias_key == key), None)
        if match is None:
            raise NotFoundError(f"Alias '{alias}' is not mapped to '{mapping.canonical_name}'")
        mapping.aliases.remove(match)
        mapping.updated_by = actor_id
        await self.db.flush()
        invalidate_lookup_cache()
        return mapping

    async def set_active(self, canonical_name: str, active: bool, actor_id: str) -> CanonicalMapping:
        """
        Raises:
            AliasConflictError: re-activating while another active mapping
                holds one of this mapping's names
        """
        mapping = await self.require_mapping(canonical_name)
        if active and not mapping.active:
            await self._check_conflicts(mapping.canonical_name, mapping.alias_names, mapping.id)
        mapping.active = active
        mapping.updated_by = actor_id
        await self.db.flush()
        invalidate_lookup_cache()
        logger.info(f"Mapping {mapping.canonical_name} active={active} by {actor_id}")
        return mapping

    async def delete_mapping(self, canonical_name: str, actor_id: str) -> None:
        mapping = await self.require_mapping(canonical_name)
        details = {"canonical_name": mapping.canonical_name, "aliases": mapping.alias_names}
        mapping_id = mapping.id
        await self.db.delete(mapping)
        await self.db.flush()
        invalidate_lookup_cache()
        await record_audit(self.db, AuditAction.MAPPING_DELETE, "canonical_mapping", mapping_id, actor_id, details)
        logger.info(f"Mapping deleted: {details['canonical_name']} by {actor_id}")

    # =========================================================================
    # Suggestions
    # =========================================================================

    async def _raw_names(self) -> Dict[str, Dict]:
        names: Dict[str, Dict] = {}

        def bump(name: str, source: str, qty=None):
            name = (name or "").strip()
            if not name:
                return
            entry = names.setdefault(name, {"name": name, "occurrences": 0, "sources": set(), "qty_on_hand": None})
            entry["occurrences"] += 1
            entry["sources"].add(source)
            if qty is not None:
                entry["qty_on_hand"] = (entry["qty_on_hand"] or Decimal("0")) + Decimal(qty)

        for name, qty in (await self.db.execute(select(ExternalItem.item_name, ExternalItem.qty_on_hand))).all():
            bump(name, "items", qty)
        for (name,) in (await self.db.execute(select(ExternalInvoiceLine.name))).all():
            bump(name, "sales")
        for (name,) in (await self.db.execute(select(ExternalOrderLine.name))).all():
            bump(name, "purchases")
        return names

    async def _reserved_keys(self) -> set:
        keys = set((await self.db.execute(select(ItemAlias.alias_key))).scalars().all())
        keys.update(alias_key(n) for n in (await self.db.execute(select(CanonicalMapping.canonical_name))).scalars().all())
        return keys

    async def suggest_mappings(self) -> Dict:
        """Unmapped raw names plus groups of names that look like the same item."""
        names = await self._raw_names()
        reserved = await self._reserved_keys()

        unmapped = [e for n, e in names.items() if alias_key(n) not in reserved]
        unmapped.sort(key=lambda e: (-e["occurrences"], e["name"].lower()))

        groups: Dict[str, List[str]] = defaultdict(list)
        for e in unmapped:
            groups[normalized_key(e["name"])].append(e["name"])

        return {
            "unmapped": [
                {
                    "name": e["name"],
                    "occurrences": e["occurrences"],
                    "sources": sorted(e["sources"]),
                    "qty_on_hand": float(e["qty_on_hand"]) if e["qty_on_hand"] is not None else None,
                }
                for e in unmapped
            ],
            "groups": [
                {"key": k, "names": sorted(v)}
                for k, v in sorted(groups.items())
                if len(v) > 1
            ],
            "total_unmapped": len(unmapped),
        }

    async def unique_items(self) -> Dict:
        """Raw names with their current resolution and mapped/unmapped counts."""
        names = await self._raw_names()
        lookup = await self.build_lookup()
        items = []
        for name in sorted(names, key=str.lower):
            canonical = lookup.get(alias_key(name))
            items.append({"name": name, "canonical_name": canonical, "mapped": canonical is not None})
        mapped = sum(1 for i in items if i["mapped"])
        return {"items": items, "total": len(items), "mapped": mapped, "unmapped": len(items) - mapped}
