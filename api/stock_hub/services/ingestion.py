# stock_hub/services/ingestion.py
"""
Ingestion upserter: validated external records -> mirror tables.

Upserts are keyed by natural key (source + invoice/order number, or source +
item name + parent) so re-ingesting the same record never duplicates it.
Line item names are resolved to canonical names on the way in.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import (
    FetchSource, ExternalInvoice, ExternalInvoiceLine, ExternalOrder, ExternalOrderLine,
    ExternalItem, InventoryItem, utcnow,
)
from stock_hub.errors import RecordValidationError
from stock_hub.models import (
    ExternalRecord, ExternalInvoiceRecord, ExternalOrderRecord, ExternalItemRecord,
)
from stock_hub.services.canonical import CanonicalService, resolve_name

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"

_record_adapter = TypeAdapter(ExternalRecord)

AnyRecord = Union[ExternalInvoiceRecord, ExternalOrderRecord, ExternalItemRecord]


def validate_record(raw: Union[Dict[str, Any], AnyRecord]) -> AnyRecord:
    """Reject, never guess: a malformed portal record raises RecordValidationError."""
    if isinstance(raw, (ExternalInvoiceRecord, ExternalOrderRecord, ExternalItemRecord)):
        return raw
    try:
        return _record_adapter.validate_python(raw)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise RecordValidationError(f"Malformed record: {errors[0]['loc']}: {errors[0]['msg']}",
                                    details={"errors": errors}) from e


def natural_key(record: AnyRecord) -> str:
    if isinstance(record, ExternalInvoiceRecord):
        return f"invoice:{record.invoice_number}"
    if isinstance(record, ExternalOrderRecord):
        return f"order:{record.order_number}"
    return f"item:{record.item_parent}/{record.item_name}"


class IngestionService:
    def __init__(self, db: AsyncSession, lookup: Optional[Dict[str, str]] = None):
        self.db = db
        self._lookup = lookup

    async def lookup(self) -> Dict[str, str]:
        if self._lookup is None:
            self._lookup = await CanonicalService(self.db).build_lookup()
        return self._lookup

    async def ingest(self, raw: Union[Dict[str, Any], AnyRecord], source: FetchSource) -> Tuple[str, str]:
        """Validate and upsert one record; returns (natural_key, outcome)."""
        record = validate_record(raw)
        if isinstance(record, ExternalInvoiceRecord):
            outcome = await self.upsert_invoice(record, source)
        elif isinstance(record, ExternalOrderRecord):
            outcome = await self.upsert_order(record, source)
        else:
            outcome = await self.upsert_item(record, source)
        return natural_key(record), outcome

    # =========================================================================
    # Sales invoices
    # =========================================================================

    async def upsert_invoice(self, rec: ExternalInvoiceRecord, source: FetchSource) -> str:
        lookup = await self.lookup()
        existing = (await self.db.execute(
            select(ExternalInvoice).where(
                ExternalInvoice.source == source,
                ExternalInvoice.invoice_number == rec.invoice_number,
            )
        )).scalar_one_or_none()

        now = utcnow()
        inv = existing or ExternalInvoice(source=source, invoice_number=rec.invoice_number, lines=[])
        inv.invoice_type = rec.invoice_type
        inv.status = rec.status
        inv.invoice_date = rec.invoice_date
        inv.customer_name = rec.customer_name
        inv.total = rec.total
        inv.detail_url = rec.detail_url
        inv.raw = rec.model_dump(mode="json", exclude={"lines"})
        inv.last_synced_at = now

        # lines already folded into stock stay frozen
        if existing is not None and existing.stock_processed:
            await self.db.flush()
            return SKIPPED

        inv.lines = [
            ExternalInvoiceLine(
                name=line.name,
                canonical_name=resolve_name(lookup, line.name),
                sku=line.sku,
                quantity=line.quantity,
                rate=line.rate,
                amount=line.amount if line.amount else line.quantity * line.rate,
            )
            for line in rec.lines
        ]
        if existing is None:
            self.db.add(inv)
        await self.db.flush()
        return UPDATED if existing is not None else CREATED

    # =========================================================================
    # Purchase orders
    # =========================================================================

    async def upsert_order(self, rec: ExternalOrderRecord, source: FetchSource) -> str:
        lookup = await self.lookup()
        existing = (await self.db.execute(
            select(ExternalOrder).where(
                ExternalOrder.source == source,
                ExternalOrder.order_number == rec.order_number,
            )
        )).scalar_one_or_none()

        order = existing or ExternalOrder(source=source, order_number=rec.order_number, lines=[])
        order.status = rec.status
        order.order_date = rec.order_date
        order.vendor_name = rec.vendor_name
        order.total = rec.total
        order.detail_url = rec.detail_url
        order.raw = rec.model_dump(mode="json", exclude={"lines"})
        order.last_synced_at = utcnow()

        if existing is not None and existing.stock_processed:
            await self.db.flush()
            return SKIPPED

        order.lines = [
            ExternalOrderLine(
                name=line.name,
                canonical_name=resolve_name(lookup, line.name),
                sku=line.sku,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total if line.line_total else line.quantity * line.unit_price,
            )
            for line in rec.lines
        ]
        if existing is None:
            self.db.add(order)
        await self.db.flush()
        return UPDATED if existing is not None else CREATED

    # =========================================================================
    # Item master
    # =========================================================================

    async def upsert_item(self, rec: ExternalItemRecord, source: FetchSource) -> str:
        lookup = await self.lookup()
        existing = (await self.db.execute(
            select(ExternalItem).where(
                ExternalItem.source == source,
                ExternalItem.item_name == rec.item_name,
                ExternalItem.item_parent == rec.item_parent,
            )
        )).scalar_one_or_none()

        now = utcnow()
        item = existing or ExternalItem(source=source, item_name=rec.item_name, item_parent=rec.item_parent)
        item.canonical_name = resolve_name(lookup, rec.item_name)
        item.description = rec.description
        item.qty_on_hand = rec.qty_on_hand
        item.purchase_cost = rec.purchase_cost
        item.sales_price = rec.sales_price
        item.category = rec.category
        item.raw = rec.model_dump(mode="json")
        item.last_synced_at = now
        if existing is None:
            self.db.add(item)

        await self._touch_inventory(item.canonical_name, now)
        await self.db.flush()
        return UPDATED if existing is not None else CREATED

    async def _touch_inventory(self, canonical_name: str, when) -> None:
        """Mark the matching inventory item as seen by a sync (no quantity change)."""
        result = await self.db.execute(
            select(InventoryItem).where(InventoryItem.name == canonical_name)
        )
        for inv in result.scalars().all():
            inv.last_synced_at = when
