# -*- coding: utf-8 -*-
"""
HTML table parsing for portal listings and detail pages.

Rows are read from the rendered page HTML with BeautifulSoup and turned into
plain dicts; validation happens later at the ingestion boundary.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from stock_hub.automation.portals import PortalConfig


@dataclass
class RowData:
    cells: List[str] = field(default_factory=list)
    links: List[Optional[str]] = field(default_factory=list)
    classes: List[str] = field(default_factory=list)
    text: str = ""

    def cell(self, idx: Optional[int]) -> str:
        if idx is None or idx >= len(self.cells):
            return ""
        return self.cells[idx]

    def link(self, idx: Optional[int]) -> Optional[str]:
        if idx is None or idx >= len(self.links):
            return None
        return self.links[idx]


def _clean(s: str) -> str:
    return re.sub(r"\s+", " ", s or "").strip()


def parse_table_rows(html: str, row_selector: str) -> List[RowData]:
    """Every element matching ``row_selector`` as a RowData (td cells, or the whole element if it has none)."""
    soup = BeautifulSoup(html or "", "html.parser")
    rows: List[RowData] = []
    for el in soup.select(row_selector):
        tds = el.find_all(["td", "th"], recursive=False) or el.find_all(["td", "th"])
        row = RowData(text=_clean(el.get_text(" ")))
        for td in tds:
            row.cells.append(_clean(td.get_text(" ")))
            a = td.find("a", href=True)
            row.links.append(a["href"] if a else None)
            row.classes.append(" ".join(td.get("class") or []))
        if not tds:
            a = el.find("a", href=True)
            row.links.append(a["href"] if a else None)
        rows.append(row)
    return rows


def _is_blank_or_footer(value: str) -> bool:
    v = value.strip().lower()
    return not v or v in {"total", "totals", "subtotal"}


def _status_from_cell(row: RowData, idx: Optional[int]) -> Optional[str]:
    text = row.cell(idx)
    css = row.classes[idx] if idx is not None and idx < len(row.classes) else ""
    if "htInvalid" in css or "status-invalid" in css:
        return "Invalid"
    return text or None


# ============================================================================
# Listing rows -> raw record dicts
# ============================================================================

def invoice_from_row(row: RowData, portal: PortalConfig, invoice_type: str) -> Optional[Dict[str, Any]]:
    cols = portal.columns
    number = row.cell(cols.get("invoice_number"))
    if _is_blank_or_footer(number):
        return None
    return {
        "kind": "invoice",
        "invoice_number": number,
        "invoice_type": invoice_type,
        "invoice_date": row.cell(cols.get("invoice_date")) or None,
        "customer_name": row.cell(cols.get("customer_name")) or None,
        "status": _status_from_cell(row, cols.get("status")),
        "total": row.cell(cols.get("total")),
        "detail_url": portal.absolute(row.link(cols.get("invoice_number"))),
        "extra": {"portal_type": row.cell(cols.get("invoice_type"))},
    }


def item_from_row(row: RowData, portal: PortalConfig) -> Optional[Dict[str, Any]]:
    cols = portal.columns
    name = row.cell(cols.get("item_name"))
    if _is_blank_or_footer(name):
        return None
    return {
        "kind": "item",
        "item_name": name,
        "item_parent": row.cell(cols.get("item_parent")),
        "description": row.cell(cols.get("description")) or None,
        "purchase_cost": row.cell(cols.get("purchase_cost")),
        "sales_price": row.cell(cols.get("sales_price")),
        "qty_on_hand": row.cell(cols.get("qty_on_hand")),
        "category": row.cell(cols.get("category")) or None,
    }


_ORDER_FIELDS = {
    "order_number": re.compile(r"Order ID:\s*#?\s*(\d+)", re.I),
    "status": re.compile(r"Status:\s*(.+?)(?=\s+(?:Date Added|Products|Customer|Total):|$)", re.I),
    "order_date": re.compile(r"Date Added:\s*([\d/\-]+)", re.I),
    "vendor_name": re.compile(r"Customer:\s*(.+?)(?=\s+(?:Products|Total|Status|Date Added):|$)", re.I),
    "total": re.compile(r"Total:\s*(\(?-?\$?[\d,]+(?:\.\d+)?\)?)", re.I),
}


def order_from_row(row: RowData, portal: PortalConfig) -> Optional[Dict[str, Any]]:
    """Order list entries are text blocks, not table rows."""
    found: Dict[str, Optional[str]] = {}
    for key, rx in _ORDER_FIELDS.items():
        m = rx.search(row.text)
        found[key] = m.group(1).strip() if m else None
    if not found["order_number"]:
        return None
    href = next((h for h in row.links if h and ("order/info" in h or "order_id" in h)), None)
    return {
        "kind": "order",
        "order_number": found["order_number"],
        "status": found["status"],
        "order_date": found["order_date"],
        "vendor_name": found["vendor_name"],
        "total": found["total"] or "0",
        "detail_url": portal.absolute(href),
    }


def record_from_row(row: RowData, portal: PortalConfig, kind_value: str) -> Optional[Dict[str, Any]]:
    if portal.record_kind == "invoice":
        return invoice_from_row(row, portal, kind_value)
    if portal.record_kind == "order":
        return order_from_row(row, portal)
    return item_from_row(row, portal)


# ============================================================================
# Detail rows -> line dicts
# ============================================================================

def lines_from_rows(rows: List[RowData], portal: PortalConfig) -> List[Dict[str, Any]]:
    cols = portal.detail_columns
    lines: List[Dict[str, Any]] = []
    for row in rows:
        name = row.cell(cols.get("name"))
        qty = row.cell(cols.get("quantity"))
        if _is_blank_or_footer(name) or not qty.strip():
            continue
        if portal.record_kind == "invoice":
            lines.append({
                "name": name,
                "sku": row.cell(cols.get("sku")) or None,
                "quantity": qty,
                "rate": row.cell(cols.get("rate")),
                "amount": row.cell(cols.get("amount")),
            })
        else:
            lines.append({
                "name": name,
                "sku": row.cell(cols.get("sku")) or None,
                "quantity": qty,
                "unit_price": row.cell(cols.get("unit_price")),
                "line_total": row.cell(cols.get("line_total")),
            })
    return lines
