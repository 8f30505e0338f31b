from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, Optional, Dict, Any, List, Literal, Union
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stock_hub.db_models import (
    FetchSource, FetchKind, FetchStatus, TriggeredBy, DeletionStatus,
)

# ============================================================================
# Value parsing shared by the external record shapes
# ============================================================================

_MONEY_STRIP = re.compile(r"[\s$,]")
_DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d", "%m/%d/%y", "%m-%d-%Y")


def parse_decimal(value: Any) -> Decimal:
    """'$1,234.50' -> Decimal('1234.50'); blank -> 0; garbage -> ValueError."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = _MONEY_STRIP.sub("", str(value))
    if not s:
        return Decimal("0")
    negative = s.startswith("(") and s.endswith(")")
    s = s.strip("()")
    try:
        d = Decimal(s)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")
    return -d if negative else d


def parse_portal_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    # "MM/DD/YYYY hh:mm" on some list views
    s = s.split(" ")[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date: {value!r}")


def normalize_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    s = value.strip()
    low = s.lower()
    if "invalid" in low:
        return "Invalid"
    if "complete" in low:
        return "Complete"
    if "pending" in low:
        return "Pending"
    if "cancel" in low:
        return "Cancelled"
    return s


def _required_text(value: Any) -> str:
    s = str(value or "").strip()
    if not s:
        raise ValueError("must not be empty")
    return s


# ============================================================================
# External records (one tagged shape per portal record type)
# ============================================================================

class InvoiceLineRecord(BaseModel):
    name: str
    sku: Optional[str] = None
    quantity: Decimal
    rate: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _required_text(v)

    @field_validator("quantity", "rate", "amount", mode="before")
    @classmethod
    def parse_amounts(cls, v):
        return parse_decimal(v)


class ExternalInvoiceRecord(BaseModel):
    kind: Literal["invoice"] = "invoice"
    invoice_number: str
    invoice_type: Literal["pending", "closed"] = "pending"
    status: Optional[str] = None
    invoice_date: Optional[date] = None
    customer_name: Optional[str] = None
    total: Decimal = Decimal("0")
    detail_url: Optional[str] = None
    lines: List[InvoiceLineRecord] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("invoice_number", mode="before")
    @classmethod
    def check_number(cls, v):
        return _required_text(v)

    @field_validator("total", mode="before")
    @classmethod
    def parse_total(cls, v):
        return parse_decimal(v)

    @field_validator("invoice_date", mode="before")
    @classmethod
    def parse_date(cls, v):
        return parse_portal_date(v)

    @field_validator("status", mode="before")
    @classmethod
    def clean_status(cls, v):
        return normalize_status(v)


class OrderLineRecord(BaseModel):
    name: str
    sku: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal = Decimal("0")
    line_total: Decimal = Decimal("0")

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _required_text(v)

    @field_validator("quantity", "unit_price", "line_total", mode="before")
    @classmethod
    def parse_amounts(cls, v):
        return parse_decimal(v)


class ExternalOrderRecord(BaseModel):
    kind: Literal["order"] = "order"
    order_number: str
    status: Optional[str] = None
    order_date: Optional[date] = None
    vendor_name: Optional[str] = None
    total: Decimal = Decimal("0")
    detail_url: Optional[str] = None
    lines: List[OrderLineRecord] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("order_number", mode="before")
    @classmethod
    def check_number(cls, v):
        # "Order ID: #75938" on the list view
        s = _required_text(v)
        m = re.search(r"#?\s*(\d+)\s*$", s)
        return m.group(1) if m else s

    @field_validator("total", mode="before")
    @classmethod
    def parse_total(cls, v):
        return parse_decimal(v)

    @field_validator("order_date", mode="before")
    @classmethod
    def parse_date(cls, v):
        return parse_portal_date(v)

    @field_validator("status", mode="before")
    @classmethod
    def clean_status(cls, v):
        return normalize_status(v)


class ExternalItemRecord(BaseModel):
    kind: Literal["item"] = "item"
    item_name: str
    item_parent: str = ""
    description: Optional[str] = None
    qty_on_hand: Decimal = Decimal("0")
    purchase_cost: Optional[Decimal] = None
    sales_price: Optional[Decimal] = None
    category: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("item_name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _required_text(v)

    @field_validator("item_parent", mode="before")
    @classmethod
    def strip_parent(cls, v):
        return str(v or "").strip()

    @field_validator("qty_on_hand", mode="before")
    @classmethod
    def parse_qty(cls, v):
        return parse_decimal(v)

    @field_validator("purchase_cost", "sales_price", mode="before")
    @classmethod
    def parse_price(cls, v):
        if v is None or str(v).strip() == "":
            return None
        return parse_decimal(v)


ExternalRecord = Annotated[
    Union[ExternalInvoiceRecord, ExternalOrderRecord, ExternalItemRecord],
    Field(discriminator="kind"),
]

# ============================================================================
# API schemas
# ============================================================================

class SyncRequest(BaseModel):
    kind: Optional[FetchKind] = None
    limit: Optional[int] = Field(default=None, ge=1)
    direction: Literal["new", "old"] = "new"
    process_stock: bool = False

class SyncStarted(BaseModel):
    fetch_id: int
    source: FetchSource
    kind: FetchKind
    status: FetchStatus

class FetchRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source: FetchSource
    fetch_kind: FetchKind
    status: FetchStatus
    triggered_by: TriggeredBy
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    results: Dict[str, int] = Field(default_factory=dict)
    error_message: Optional[str] = None

class InventoryItemIn(BaseModel):
    sku: str
    name: str
    unit: str = "pcs"
    quantity_minimum: Decimal = Decimal("0")
    selling_price: Optional[Decimal] = None

class InventoryItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sku: str
    name: str
    unit: str
    quantity_current: Decimal
    purchase_price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None

class PurchaseIn(BaseModel):
    inventory_item_id: int
    quantity: Decimal = Field(gt=0)
    purchase_price: Decimal = Field(ge=0)
    selling_price: Optional[Decimal] = None
    purchase_date: Optional[date] = None
    unit: Optional[str] = None  # defaults to the item's unit
    supplier_name: Optional[str] = None
    batch_number: Optional[str] = None
    invoice_number: Optional[str] = None
    notes: Optional[str] = None

class PurchaseUpdate(BaseModel):
    quantity: Optional[Decimal] = Field(default=None, gt=0)
    purchase_price: Optional[Decimal] = Field(default=None, ge=0)
    selling_price: Optional[Decimal] = None
    purchase_date: Optional[date] = None
    supplier_name: Optional[str] = None
    batch_number: Optional[str] = None
    invoice_number: Optional[str] = None
    notes: Optional[str] = None
    reason: Optional[str] = None

class PurchaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    inventory_item_id: Optional[int] = None
    purchase_date: date
    quantity: Decimal
    remaining_quantity: Decimal
    unit: str
    purchase_price: Decimal
    selling_price: Optional[Decimal] = None
    supplier_name: Optional[str] = None
    batch_number: Optional[str] = None
    invoice_number: Optional[str] = None
    deletion_status: DeletionStatus
    deletion_reason: Optional[str] = None
    deletion_requested_by: Optional[str] = None
    deletion_requested_at: Optional[datetime] = None

class DeletionRequestIn(BaseModel):
    reason: str = Field(min_length=1)

class DeletionDecisionIn(BaseModel):
    reason: Optional[str] = None

class AliasIn(BaseModel):
    name: str = Field(min_length=1)
    notes: Optional[str] = None

class MappingIn(BaseModel):
    canonical_name: str = Field(min_length=1)
    aliases: List[str] = Field(default_factory=list)
    description: Optional[str] = None

class MappingUpdate(BaseModel):
    aliases: Optional[List[str]] = None
    description: Optional[str] = None
    active: Optional[bool] = None

class MappingOut(BaseModel):
    id: int
    canonical_name: str
    aliases: List[str]
    description: Optional[str] = None
    active: bool

    @classmethod
    def from_row(cls, m) -> "MappingOut":
        return cls(
            id=m.id,
            canonical_name=m.canonical_name,
            aliases=m.alias_names,
            description=m.description,
            active=m.active,
        )
