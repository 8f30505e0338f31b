# stock_hub/services/reconciliation.py
"""
Stock reconciliation: purchased vs. sold per canonical item identity.

``reconcile`` is a pure function over purchase batches and sale lines;
``ReconciliationService`` gathers both sides from the database.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stock_hub.db_models import (
    InventoryItem, Purchase, ExternalInvoiceLine, ExternalOrderLine,
)
from stock_hub.services.canonical import CanonicalService, resolve_name

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")


class StockStatus(str, enum.Enum):
    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    OVERSOLD = "OVERSOLD"
    UNMATCHED_SALE = "UNMATCHED_SALE"


@dataclass
class PurchaseBatch:
    name: str
    quantity: Decimal
    unit_price: Decimal
    remaining: Optional[Decimal] = None
    sku: Optional[str] = None
    source: str = "ledger"

    def __post_init__(self):
        self.quantity = Decimal(self.quantity)
        self.unit_price = Decimal(self.unit_price)
        self.remaining = self.quantity if self.remaining is None else Decimal(self.remaining)


@dataclass
class SaleLine:
    name: str
    quantity: Decimal
    amount: Decimal
    sku: Optional[str] = None

    def __post_init__(self):
        self.quantity = Decimal(self.quantity)
        self.amount = Decimal(self.amount)


@dataclass
class SideTotals:
    quantity: Decimal = ZERO
    avg_price: Decimal = ZERO
    total_value: Decimal = ZERO
    count: int = 0


@dataclass
class ReconciledItem:
    identity: str
    skus: List[str]
    purchased: SideTotals
    sold: SideTotals
    current: Decimal
    status: StockStatus
    profit_margin: Decimal
    profit: Decimal


@dataclass
class ReconciliationSummary:
    total_items: int = 0
    in_stock: int = 0
    out_of_stock: int = 0
    oversold: int = 0
    unmatched_sales: int = 0
    total_purchase_value: Decimal = ZERO
    total_sale_value: Decimal = ZERO
    total_profit: Decimal = ZERO


@dataclass
class ReconciliationReport:
    items: List[ReconciledItem] = field(default_factory=list)
    summary: ReconciliationSummary = field(default_factory=ReconciliationSummary)

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


def _jsonable(obj):
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, enum.Enum):
        return obj.value
    return obj


# ============================================================================
# Pure calculations
# ============================================================================

def weighted_average_cost(batches: Iterable[PurchaseBatch]) -> Decimal:
    """
    Quantity-weighted purchase price over batches that still have stock.

    When every batch is consumed the full purchase history is used instead,
    so a sold-out item still has a cost basis.
    """
    batches = list(batches)
    live = [(b.remaining, b.unit_price) for b in batches if b.remaining > 0]
    pool = live or [(b.quantity, b.unit_price) for b in batches]
    total_qty = sum((q for q, _ in pool), ZERO)
    if total_qty <= 0:
        return ZERO
    return sum((q * p for q, p in pool), ZERO) / total_qty


def classify(current: Decimal, purchased_qty: Decimal) -> StockStatus:
    if purchased_qty == 0 and current < 0:
        return StockStatus.UNMATCHED_SALE
    if current < 0:
        return StockStatus.OVERSOLD
    if current == 0:
        return StockStatus.OUT_OF_STOCK
    return StockStatus.IN_STOCK


def profit_margin(avg_sale: Decimal, avg_purchase: Decimal) -> Decimal:
    """Percentage margin on sale price; 0 when nothing was sold."""
    if avg_sale <= 0:
        return ZERO
    return ((avg_sale - avg_purchase) / avg_sale * 100).quantize(CENT, rounding=ROUND_HALF_UP)


def reconcile(
    batches: Iterable[PurchaseBatch],
    sales: Iterable[SaleLine],
    resolve: Callable[[str], str] = lambda name: name,
) -> ReconciliationReport:
    """
    Group both sides by canonical identity and compute current = purchased - sold.

    Identities are compared case-insensitively; the first spelling seen
    after resolution is the one reported.
    """
    display: Dict[str, str] = {}
    skus: Dict[str, set] = {}
    bought: Dict[str, List[PurchaseBatch]] = {}
    sold: Dict[str, List[SaleLine]] = {}

    def key_for(name: str, sku: Optional[str]) -> str:
        identity = resolve(name).strip()
        k = identity.lower()
        display.setdefault(k, identity)
        if sku:
            skus.setdefault(k, set()).add(sku)
        return k

    for b in batches:
        bought.setdefault(key_for(b.name, b.sku), []).append(b)
    for s in sales:
        sold.setdefault(key_for(s.name, s.sku), []).append(s)

    report = ReconciliationReport()
    summary = report.summary

    for k in set(bought) | set(sold):
        p_batches = bought.get(k, [])
        s_lines = sold.get(k, [])

        p_qty = sum((b.quantity for b in p_batches), ZERO)
        p_value = sum((b.quantity * b.unit_price for b in p_batches), ZERO)
        avg_cost = weighted_average_cost(p_batches) if p_batches else ZERO

        s_qty = sum((s.quantity for s in s_lines), ZERO)
        s_value = sum((s.amount for s in s_lines), ZERO)
        avg_sale = s_value / s_qty if s_qty > 0 else ZERO

        current = p_qty - s_qty
        status = classify(current, p_qty)
        profit = s_value - s_qty * avg_cost if p_batches else ZERO

        report.items.append(ReconciledItem(
            identity=display[k],
            skus=sorted(skus.get(k, ())),
            purchased=SideTotals(quantity=p_qty, avg_price=avg_cost, total_value=p_value, count=len(p_batches)),
            sold=SideTotals(quantity=s_qty, avg_price=avg_sale, total_value=s_value, count=len(s_lines)),
            current=current,
            status=status,
            profit_margin=profit_margin(avg_sale, avg_cost) if p_batches else ZERO,
            profit=profit,
        ))

        summary.total_purchase_value += p_value
        summary.total_sale_value += s_value
        summary.total_profit += profit
        if status == StockStatus.IN_STOCK:
            summary.in_stock += 1
        elif status == StockStatus.OUT_OF_STOCK:
            summary.out_of_stock += 1
        elif status == StockStatus.OVERSOLD:
            summary.oversold += 1
        else:
            summary.unmatched_sales += 1

    # lowest stock first, problems surface at the top
    report.items.sort(key=lambda i: (i.current, i.identity.lower()))
    summary.total_items = len(report.items)
    return report


# ============================================================================
# Database gathering
# ============================================================================

class ReconciliationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _resolver(self) -> Callable[[str], str]:
        lookup = await CanonicalService(self.db).build_lookup()
        return lambda name: resolve_name(lookup, name)

    async def purchase_batches(self) -> List[PurchaseBatch]:
        batches: List[PurchaseBatch] = []
        result = await self.db.execute(
            select(Purchase, InventoryItem.name, InventoryItem.sku)
            .join(InventoryItem, Purchase.inventory_item_id == InventoryItem.id)
        )
        for p, name, sku in result.all():
            batches.append(PurchaseBatch(
                name=name, sku=sku, quantity=p.quantity, unit_price=p.purchase_price,
                remaining=p.remaining_quantity, source="ledger",
            ))

        result = await self.db.execute(select(ExternalOrderLine))
        for line in result.scalars().all():
            if line.quantity <= 0:
                continue
            price = line.unit_price if line.unit_price else (line.line_total / line.quantity)
            batches.append(PurchaseBatch(
                name=line.name, sku=line.sku, quantity=line.quantity, unit_price=price, source="order",
            ))
        return batches

    async def sale_lines(self) -> List[SaleLine]:
        result = await self.db.execute(select(ExternalInvoiceLine))
        return [
            SaleLine(name=line.name, sku=line.sku, quantity=line.quantity,
                     amount=line.amount if line.amount else line.quantity * line.rate)
            for line in result.scalars().all()
        ]

    async def build_report(self) -> ReconciliationReport:
        resolve = await self._resolver()
        report = reconcile(await self.purchase_batches(), await self.sale_lines(), resolve)
        logger.info(f"Reconciliation built: {report.summary.total_items} identities, "
                    f"{report.summary.oversold} oversold, {report.summary.unmatched_sales} unmatched sales")
        return report

    async def pricing_table(self) -> List[dict]:
        """POS price lookup: weighted average purchase cost per inventory item."""
        items = (await self.db.execute(
            select(InventoryItem).where(InventoryItem.is_active.is_(True)).order_by(InventoryItem.name)
        )).scalars().all()
        purchases = (await self.db.execute(select(Purchase).order_by(Purchase.purchase_date, Purchase.id))).scalars().all()

        by_item: Dict[int, List[Purchase]] = {}
        for p in purchases:
            if p.inventory_item_id is not None:
                by_item.setdefault(p.inventory_item_id, []).append(p)

        rows = []
        for item in items:
            batches = [
                PurchaseBatch(name=item.name, quantity=p.quantity, unit_price=p.purchase_price, remaining=p.remaining_quantity)
                for p in by_item.get(item.id, [])
            ]
            rows.append({
                "item_id": item.id,
                "sku": item.sku,
                "name": item.name,
                "quantity": float(item.quantity_current),
                "unit": item.unit,
                "avg_purchase_price": float(weighted_average_cost(batches)) if batches else None,
                "selling_price": float(item.selling_price) if item.selling_price is not None else None,
                "batches": len(batches),
            })
        return rows
