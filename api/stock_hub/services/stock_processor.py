# stock_hub/services/stock_processor.py
"""
Folds mirrored orders (IN) and invoices (OUT) into the stock ledger.

Each record is flagged stock_processed once its movements are written so
repeated runs never double count. Lines whose item cannot be matched to an
inventory item are reported and the record stays unprocessed.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import (
    ExternalInvoice, ExternalOrder, StockAction, MovementType, MovementRefType, utcnow,
)
from stock_hub.services.canonical import CanonicalService, resolve_name
from stock_hub.services.purchases import PurchaseService
from stock_hub.services.stock import StockLedger

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    orders_processed: int = 0
    invoices_processed: int = 0
    movements: int = 0
    failed: int = 0
    unmatched: List[str] = field(default_factory=list)


class StockProcessor:
    def __init__(self, db: AsyncSession, actor_id: str = "system"):
        self.db = db
        self.actor_id = actor_id
        self.stock = StockLedger(db)
        self.purchases = PurchaseService(db)

    async def _match(self, lookup, name: str, sku: Optional[str]):
        if sku:
            item = await self.stock.find_item(sku)
            if item is not None:
                return item
        return await self.stock.find_item(resolve_name(lookup, name))

    async def process_pending(self, limit: Optional[int] = None) -> ProcessingResult:
        result = ProcessingResult()
        lookup = await CanonicalService(self.db).build_lookup()

        orders_stmt = select(ExternalOrder).where(ExternalOrder.stock_processed.is_(False)).order_by(ExternalOrder.id)
        invoices_stmt = (
            select(ExternalInvoice)
            .where(ExternalInvoice.stock_processed.is_(False))
            .order_by(ExternalInvoice.invoice_date, ExternalInvoice.id)
        )
        if limit:
            orders_stmt = orders_stmt.limit(limit)
            invoices_stmt = invoices_stmt.limit(limit)

        # purchases first so same-run sales have stock to draw from
        for order in (await self.db.execute(orders_stmt)).scalars().all():
            if await self._process(order, lookup, result, inbound=True):
                result.orders_processed += 1
        for invoice in (await self.db.execute(invoices_stmt)).scalars().all():
            if await self._process(invoice, lookup, result, inbound=False):
                result.invoices_processed += 1

        logger.info(
            f"Stock processing: {result.orders_processed} orders, {result.invoices_processed} invoices, "
            f"{result.movements} movements, {result.failed} failed"
        )
        return result

    async def _process(self, record, lookup, result: ProcessingResult, inbound: bool) -> bool:
        number = record.order_number if inbound else record.invoice_number
        ref_type = MovementRefType.PURCHASE_ORDER if inbound else MovementRefType.INVOICE

        # match every line before writing so a bad line leaves the record untouched
        matched = []
        for line in record.lines:
            qty = Decimal(line.quantity)
            if qty == 0:
                continue
            item = await self._match(lookup, line.name, line.sku)
            if item is None:
                message = f"No inventory item for '{line.name}' on {ref_type.value} {number}"
                record.stock_processing_error = message
                result.failed += 1
                result.unmatched.append(message)
                logger.warning(f"Stock processing skipped {ref_type.value} {number}: {message}")
                await self.db.flush()
                return False
            matched.append((item, qty))

        for item, qty in matched:
            if inbound:
                await self.stock.apply_stock_delta(
                    item.id, qty, f"Order {number}", self.actor_id,
                    action=StockAction.added, movement_type=MovementType.IN,
                    ref_type=ref_type, ref_id=number, source_ref=record.source.value,
                )
            else:
                await self.purchases.consume(item.id, qty)
                await self.stock.apply_stock_delta(
                    item.id, -qty, f"Invoice {number}", self.actor_id,
                    action=StockAction.sold, movement_type=MovementType.OUT,
                    ref_type=ref_type, ref_id=number, source_ref=record.source.value,
                )
        record.stock_processed = True
        record.stock_processed_at = utcnow()
        record.stock_processing_error = None
        await self.db.flush()
        result.movements += len(matched)
        return True
