# stock_hub/db_models.py
"""
SQLAlchemy ORM Models for Stock Hub.

Internal ledger (inventory items, purchases, stock history and movements),
canonical item mappings, fetch history and the mirrors of external portal
records (sales invoices, purchase orders, item master).
"""
from __future__ import annotations
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional, List, Any
import enum

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Text, Date, DateTime,
    Numeric, ForeignKey, Index, CheckConstraint, UniqueConstraint,
    Enum as SQLEnum, JSON, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from stock_hub.database import Base

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================================
# ENUMS
# ============================================================================

class FetchSource(str, enum.Enum):
    routestar_invoices = "routestar_invoices"
    routestar_items = "routestar_items"
    customer_connect = "customer_connect"


class FetchKind(str, enum.Enum):
    pending = "pending"
    closed = "closed"
    all = "all"
    items = "items"


class FetchStatus(str, enum.Enum):
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class TriggeredBy(str, enum.Enum):
    manual = "manual"
    scheduled = "scheduled"
    api = "api"


class DeletionStatus(str, enum.Enum):
    none = "none"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class StockAction(str, enum.Enum):
    added = "added"
    removed = "removed"
    adjusted = "adjusted"
    sold = "sold"


class MovementType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"


class MovementRefType(str, enum.Enum):
    PURCHASE = "PURCHASE"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    INVOICE = "INVOICE"
    ADJUSTMENT = "ADJUSTMENT"
    DELETION = "DELETION"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE_REQUEST = "DELETE_REQUEST"
    DELETE_APPROVE = "DELETE_APPROVE"
    DELETE_REJECT = "DELETE_REJECT"
    MAPPING_UPSERT = "MAPPING_UPSERT"
    MAPPING_DELETE = "MAPPING_DELETE"


# one shared type so PostgreSQL creates fetch_source once
FetchSourceType = SQLEnum(FetchSource, name="fetch_source")


# ============================================================================
# MIXINS
# ============================================================================

class TimestampMixin:
    """Mixin for created_at and updated_at columns."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================================================
# 1. INVENTORY
# ============================================================================

class InventoryItem(Base, TimestampMixin):
    __tablename__ = "inventory_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    quantity_current: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal("0"), nullable=False)
    quantity_minimum: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal("0"), nullable=False)
    purchase_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))
    selling_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    history: Mapped[List["StockHistoryEntry"]] = relationship(
        back_populates="item", cascade="all, delete-orphan", passive_deletes=True, order_by="StockHistoryEntry.id"
    )

    __table_args__ = (
        Index("idx_inventory_name", "name"),
    )

    @validates("sku")
    def validate_sku(self, key, value):
        return (value or "").strip().upper()


class StockHistoryEntry(Base):
    __tablename__ = "stock_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False)
    action: Mapped[StockAction] = mapped_column(SQLEnum(StockAction, name="stock_action"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    actor_id: Mapped[str] = mapped_column(String(100), default="system", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)

    item: Mapped["InventoryItem"] = relationship(back_populates="history")

    __table_args__ = (
        Index("idx_stock_history_item", "item_id"),
    )


class StockMovement(Base):
    """Append-only movement ledger keyed by SKU."""
    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(
        SQLEnum(MovementType, name="movement_type"),
        nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    ref_type: Mapped[MovementRefType] = mapped_column(SQLEnum(MovementRefType, name="movement_ref_type"), nullable=False)
    ref_id: Mapped[Optional[str]] = mapped_column(String(100))
    source_ref: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(String(100), default="system", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("quantity != 0", name="chk_movement_quantity_not_zero"),
        Index("idx_movements_sku", "sku"),
        Index("idx_movements_type", "movement_type"),
        Index("idx_movements_reference", "ref_type", "ref_id"),
    )


# ============================================================================
# 2. PURCHASES
# ============================================================================

class Purchase(Base, TimestampMixin):
    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    # SET NULL so an approval can report the missing owner instead of cascading
    inventory_item_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("inventory_items.id", ondelete="SET NULL")
    )
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    purchase_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    selling_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255))
    batch_number: Mapped[Optional[str]] = mapped_column(String(100))
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    deletion_status: Mapped[DeletionStatus] = mapped_column(
        SQLEnum(DeletionStatus, name="deletion_status"),
        default=DeletionStatus.none,
        nullable=False
    )
    deletion_reason: Mapped[Optional[str]] = mapped_column(Text)
    deletion_requested_by: Mapped[Optional[str]] = mapped_column(String(100))
    deletion_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deletion_approved_by: Mapped[Optional[str]] = mapped_column(String(100))
    deletion_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deletion_rejected_by: Mapped[Optional[str]] = mapped_column(String(100))
    deletion_rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[str] = mapped_column(String(100), default="system", nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(100))

    item: Mapped[Optional["InventoryItem"]] = relationship(lazy="selectin")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_purchase_quantity_positive"),
        CheckConstraint("remaining_quantity >= 0", name="chk_purchase_remaining_non_negative"),
        CheckConstraint("remaining_quantity <= quantity", name="chk_purchase_remaining_le_quantity"),
        Index("idx_purchases_item", "inventory_item_id"),
        Index("idx_purchases_deletion", "deletion_status"),
    )

    @property
    def consumed_quantity(self) -> Decimal:
        return Decimal(self.quantity) - Decimal(self.remaining_quantity)

    @property
    def total_cost(self) -> Decimal:
        return Decimal(self.quantity) * Decimal(self.purchase_price)


# ============================================================================
# 3. CANONICAL MAPPINGS
# ============================================================================

class CanonicalMapping(Base, TimestampMixin):
    __tablename__ = "canonical_mappings"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    canonical_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), default="system", nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(100))

    aliases: Mapped[List["ItemAlias"]] = relationship(
        back_populates="mapping", cascade="all, delete-orphan", lazy="selectin", order_by="ItemAlias.id"
    )

    @property
    def alias_names(self) -> List[str]:
        return [a.name for a in self.aliases]


class ItemAlias(Base):
    __tablename__ = "item_aliases"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    mapping_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("canonical_mappings.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # lower-cased name; an alias belongs to exactly one mapping
    alias_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)

    mapping: Mapped["CanonicalMapping"] = relationship(back_populates="aliases")


# ============================================================================
# 4. FETCH HISTORY
# ============================================================================

class FetchRecord(Base):
    __tablename__ = "fetch_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    source: Mapped[FetchSource] = mapped_column(FetchSourceType, nullable=False)
    fetch_kind: Mapped[FetchKind] = mapped_column(SQLEnum(FetchKind, name="fetch_kind"), nullable=False)
    status: Mapped[FetchStatus] = mapped_column(
        SQLEnum(FetchStatus, name="fetch_status"),
        default=FetchStatus.in_progress,
        nullable=False
    )
    triggered_by: Mapped[TriggeredBy] = mapped_column(
        SQLEnum(TriggeredBy, name="fetch_trigger"),
        default=TriggeredBy.manual,
        nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    results: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    fetch_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_fetch_source_started", "source", "started_at"),
        Index("idx_fetch_status", "status"),
        Index("idx_fetch_expires", "expires_at"),
    )


# ============================================================================
# 5. EXTERNAL MIRRORS
# ============================================================================

class ExternalInvoice(Base, TimestampMixin):
    """Sales invoice mirrored from the route-accounting portal."""
    __tablename__ = "external_invoices"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    source: Mapped[FetchSource] = mapped_column(FetchSourceType, nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_type: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(50))
    invoice_date: Mapped[Optional[date]] = mapped_column(Date)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    detail_url: Mapped[Optional[str]] = mapped_column(String(500))
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stock_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stock_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stock_processing_error: Mapped[Optional[str]] = mapped_column(Text)

    lines: Mapped[List["ExternalInvoiceLine"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", lazy="selectin", order_by="ExternalInvoiceLine.id"
    )

    __table_args__ = (
        UniqueConstraint("source", "invoice_number", name="uq_external_invoice_number"),
        Index("idx_external_invoices_processed", "stock_processed"),
    )


class ExternalInvoiceLine(Base):
    __tablename__ = "external_invoice_lines"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("external_invoices.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    canonical_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    invoice: Mapped["ExternalInvoice"] = relationship(back_populates="lines")

    __table_args__ = (
        Index("idx_invoice_lines_canonical", "canonical_name"),
    )


class ExternalOrder(Base, TimestampMixin):
    """Purchase order mirrored from the supplier portal."""
    __tablename__ = "external_orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    source: Mapped[FetchSource] = mapped_column(FetchSourceType, nullable=False)
    order_number: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(50))
    order_date: Mapped[Optional[date]] = mapped_column(Date)
    vendor_name: Mapped[Optional[str]] = mapped_column(String(255))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    detail_url: Mapped[Optional[str]] = mapped_column(String(500))
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stock_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stock_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stock_processing_error: Mapped[Optional[str]] = mapped_column(Text)

    lines: Mapped[List["ExternalOrderLine"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="ExternalOrderLine.id"
    )

    __table_args__ = (
        UniqueConstraint("source", "order_number", name="uq_external_order_number"),
        Index("idx_external_orders_processed", "stock_processed"),
    )


class ExternalOrderLine(Base):
    __tablename__ = "external_order_lines"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("external_orders.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    canonical_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    order: Mapped["ExternalOrder"] = relationship(back_populates="lines")

    __table_args__ = (
        Index("idx_order_lines_canonical", "canonical_name"),
    )


class ExternalItem(Base, TimestampMixin):
    """Item master row mirrored from the route-accounting portal."""
    __tablename__ = "external_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    source: Mapped[FetchSource] = mapped_column(FetchSourceType, nullable=False)
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    item_parent: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    canonical_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    qty_on_hand: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal("0"), nullable=False)
    purchase_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))
    sales_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))
    category: Mapped[Optional[str]] = mapped_column(String(255))
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("source", "item_name", "item_parent", name="uq_external_item"),
        Index("idx_external_items_canonical", "canonical_name"),
    )


# ============================================================================
# 6. AUDIT
# ============================================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction, name="audit_action"), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100))
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_audit_resource", "resource", "resource_id"),
    )
