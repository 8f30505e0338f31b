from __future__ import annotations

import pytest

from stock_hub.db_models import FetchSource
from stock_hub.errors import AliasConflictError, NotFoundError
from stock_hub.services.canonical import CanonicalService, normalized_key, resolve_name
from stock_hub.services.ingestion import IngestionService


def test_resolve_name_trims_and_ignores_case():
    lookup = {"wheat flour": "Wheat", "wheat": "Wheat"}
    assert resolve_name(lookup, "  WHEAT Flour ") == "Wheat"
    assert resolve_name(lookup, " Rye ") == "Rye"
    assert normalized_key("Wheat-Flour 50lb") == normalized_key("wheat flour 50 lb")


async def test_alias_belongs_to_one_mapping(db):
    svc = CanonicalService(db)
    await svc.upsert_mapping("Wheat", ["wheat flour"], "admin")

    with pytest.raises(AliasConflictError) as exc:
        await svc.upsert_mapping("Flour", ["Wheat Flour"], "admin")
    assert exc.value.details["conflicts"] == {"wheat flour": "Wheat"}

    # another mapping's canonical name is reserved too
    with pytest.raises(AliasConflictError):
        await svc.upsert_mapping("Rye", ["wheat"], "admin")

    assert [m.canonical_name for m in await svc.list_mappings()] == ["Wheat"]


async def test_upsert_is_idempotent_and_replace_drops_old_aliases(db):
    svc = CanonicalService(db)
    await svc.upsert_mapping("Wheat", ["wheat flour", "WHEAT FLOUR"], "admin")
    mapping = await svc.upsert_mapping("Wheat", ["wheat flour"], "admin")
    assert mapping.alias_names == ["wheat flour"]

    mapping = await svc.upsert_mapping("Wheat", ["wht"], "admin", replace=True)
    assert mapping.alias_names == ["wht"]
    assert await svc.resolve("wheat flour") == "wheat flour"
    assert await svc.resolve("WHT") == "Wheat"


async def test_deactivated_mapping_stops_resolving_and_frees_its_aliases(db):
    svc = CanonicalService(db)
    await svc.upsert_mapping("Wheat", ["wheat flour"], "admin")
    assert await svc.resolve("Wheat Flour") == "Wheat"

    await svc.set_active("Wheat", False, "admin")

    assert await svc.resolve("Wheat Flour") == "Wheat Flour"
    assert [m.canonical_name for m in await svc.list_mappings(include_inactive=False)] == []

    # an active mapping takes the alias over from the inactive one
    flour = await svc.upsert_mapping("Flour", ["Wheat Flour"], "admin")
    assert flour.alias_names == ["Wheat Flour"]
    assert (await svc.get_mapping("Wheat")).alias_names == []
    assert await svc.resolve("wheat flour") == "Flour"

    # upserting re-activates
    await svc.upsert_mapping("Wheat", [], "admin")
    assert await svc.resolve("wheat") == "Wheat"
    assert await svc.resolve("wheat flour") == "Flour"


async def test_add_alias_takes_over_from_inactive_mapping(db):
    svc = CanonicalService(db)
    await svc.upsert_mapping("Wheat", ["wht"], "admin")
    await svc.set_active("Wheat", False, "admin")
    await svc.upsert_mapping("Grain", [], "admin")

    grain = await svc.add_alias("Grain", "WHT", "admin", notes="moved")

    assert grain.alias_names == ["WHT"]
    assert grain.aliases[0].notes == "moved"
    assert await svc.resolve("wht") == "Grain"


async def test_reactivation_conflicts_with_active_owner(db):
    svc = CanonicalService(db)
    await svc.upsert_mapping("Wheat", [], "admin")
    await svc.set_active("Wheat", False, "admin")

    # an inactive mapping's canonical name is free to use as an alias
    await svc.upsert_mapping("Grain", ["wheat"], "admin")

    with pytest.raises(AliasConflictError) as exc:
        await svc.set_active("Wheat", True, "admin")
    assert exc.value.details["conflicts"] == {"wheat": "Grain"}
    with pytest.raises(AliasConflictError):
        await svc.upsert_mapping("Wheat", [], "admin")

    assert not (await svc.get_mapping("Wheat")).active
    assert await svc.resolve("wheat") == "Grain"


async def test_add_and_remove_alias_invalidate_lookup(db):
    svc = CanonicalService(db)
    await svc.upsert_mapping("Wheat", [], "admin")
    assert await svc.resolve("whole wheat") == "whole wheat"

    await svc.add_alias("wheat", "Whole Wheat", "admin")
    assert await svc.resolve("whole wheat") == "Wheat"

    await svc.remove_alias("Wheat", "WHOLE WHEAT", "admin")
    assert await svc.resolve("whole wheat") == "whole wheat"

    with pytest.raises(NotFoundError):
        await svc.remove_alias("Wheat", "nope", "admin")
    with pytest.raises(NotFoundError):
        await svc.add_alias("Barley", "barley grain", "admin")


async def test_delete_mapping_frees_its_aliases(db):
    svc = CanonicalService(db)
    await svc.upsert_mapping("Wheat", ["wheat flour"], "admin")

    await svc.delete_mapping("Wheat", "admin")
    mapping = await svc.upsert_mapping("Flour", ["wheat flour"], "admin")

    assert mapping.alias_names == ["wheat flour"]
    assert await svc.resolve("wheat flour") == "Flour"


async def test_suggestions_group_lookalikes_without_merging(db):
    await CanonicalService(db).upsert_mapping("Wheat", ["wheat flour"], "admin")
    await IngestionService(db).ingest({
        "kind": "invoice",
        "invoice_number": "9",
        "total": "10",
        "lines": [
            {"name": "Rye Flour", "quantity": "1", "rate": "5"},
            {"name": "rye-flour", "quantity": "1", "rate": "5"},
            {"name": "Wheat Flour", "quantity": "1", "rate": "5"},
        ],
    }, FetchSource.routestar_invoices)
    svc = CanonicalService(db)

    suggestions = await svc.suggest_mappings()

    assert sorted(u["name"] for u in suggestions["unmapped"]) == ["Rye Flour", "rye-flour"]
    assert suggestions["groups"] == [{"key": "ryeflour", "names": ["Rye Flour", "rye-flour"]}]
    assert [m.canonical_name for m in await svc.list_mappings()] == ["Wheat"]

    unique = await svc.unique_items()
    assert (unique["total"], unique["mapped"], unique["unmapped"]) == (3, 1, 2)
