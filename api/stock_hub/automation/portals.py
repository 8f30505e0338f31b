# -*- coding: utf-8 -*-
"""
Portal definitions: URLs, credentials, selectors and table column layouts
for each fetch source.

The route-accounting portal (RouteStar) serves both sales invoices and the
item master; the supplier portal (CustomerConnect) serves purchase orders.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urljoin

from stock_hub.db_models import FetchSource, FetchKind
from stock_hub.settings import settings


@dataclass
class PortalConfig:
    """Everything the navigator and parsers need to walk one portal listing."""
    source: FetchSource
    name: str
    base_url: str
    login_path: str
    username: str = ""
    password: str = ""
    storage_state_path: str = ""

    # Login form
    user_selector: str = "#username"
    pass_selector: str = "#password"
    submit_selector: str = "button[type='submit']"
    cookie_accept_selector: str = "button:has-text('Accept'), button:has-text('I Agree')"
    login_error_selector: str = ".alert-danger, .alert-error"
    # URL fragment that means "we are on the login page"
    login_marker: str = "/login"

    # Listing
    record_kind: str = "invoice"  # invoice | order | item
    list_paths: Dict[FetchKind, str] = field(default_factory=dict)
    default_kind: FetchKind = FetchKind.all
    row_selector: str = "table tbody tr"
    content_selector: str = "table tbody tr"
    next_selectors: List[str] = field(default_factory=list)
    sort_selector: Optional[str] = None
    columns: Dict[str, int] = field(default_factory=dict)

    # Detail page (line items)
    detail_row_selector: Optional[str] = None
    detail_columns: Dict[str, int] = field(default_factory=dict)

    @property
    def login_url(self) -> str:
        return urljoin(self.base_url, self.login_path)

    def list_url(self, kind: FetchKind) -> str:
        if kind not in self.list_paths:
            raise ValueError(f"{self.name} has no '{kind.value}' listing")
        return urljoin(self.base_url, self.list_paths[kind])

    def absolute(self, href: Optional[str]) -> Optional[str]:
        return urljoin(self.base_url, href) if href else None

    def is_login_url(self, url: str) -> bool:
        return self.login_marker.lower() in (url or "").lower()


def _state_path(name: str) -> str:
    return str(Path(settings.STOCK_HUB_DATA_ROOT).expanduser() / "state" / f"{name}_storage_state.json")


_ROUTESTAR_NEXT = [
    ".pagination li.next a",
    ".pagination li.next",
    "a:has-text('Next')",
    "button:has-text('Next')",
]


def routestar_invoices() -> PortalConfig:
    return PortalConfig(
        source=FetchSource.routestar_invoices,
        name="RouteStar",
        base_url=settings.ROUTESTAR_BASE_URL,
        login_path="/web/login/",
        username=settings.ROUTESTAR_USERNAME,
        password=settings.ROUTESTAR_PASSWORD,
        storage_state_path=_state_path("routestar"),
        submit_selector="button[type='submit'].btn-primary",
        login_marker="/web/login",
        record_kind="invoice",
        list_paths={FetchKind.pending: "/web/invoices/", FetchKind.closed: "/web/closedinvoices/"},
        default_kind=FetchKind.pending,
        row_selector="div.ht_master table.htCore tbody tr",
        content_selector="table.htCore tbody tr",
        next_selectors=_ROUTESTAR_NEXT,
        sort_selector="div.ht_master table.htCore thead th:nth-of-type(2)",
        columns={"invoice_number": 1, "invoice_date": 2, "customer_name": 6, "invoice_type": 7,
                 "status": 9, "total": 12},
        detail_row_selector="div.ht_master table.htCore tbody tr",
        detail_columns={"name": 0, "description": 1, "quantity": 2, "rate": 3, "amount": 4},
    )


def routestar_items() -> PortalConfig:
    cfg = routestar_invoices()
    cfg.source = FetchSource.routestar_items
    cfg.record_kind = "item"
    cfg.list_paths = {FetchKind.items: "/web/items/"}
    cfg.default_kind = FetchKind.items
    cfg.sort_selector = None
    cfg.columns = {"item_parent": 0, "item_name": 1, "description": 2, "purchase_cost": 3,
                   "sales_price": 4, "qty_on_hand": 7, "category": 11}
    cfg.detail_row_selector = None
    cfg.detail_columns = {}
    return cfg


def customer_connect() -> PortalConfig:
    return PortalConfig(
        source=FetchSource.customer_connect,
        name="CustomerConnect",
        base_url=settings.CUSTOMERCONNECT_BASE_URL,
        login_path="/index.php?route=account/login",
        username=settings.CUSTOMERCONNECT_USERNAME,
        password=settings.CUSTOMERCONNECT_PASSWORD,
        storage_state_path=_state_path("customerconnect"),
        user_selector="input[name='email']",
        pass_selector="input[name='password']",
        submit_selector="input[type='submit'][value='Login']",
        login_error_selector=".alert-danger, .warning, .error",
        login_marker="route=account/login",
        record_kind="order",
        list_paths={FetchKind.all: "/index.php?route=account/order"},
        default_kind=FetchKind.all,
        row_selector="#content .order-list-item",
        content_selector="#content .order-list-item",
        next_selectors=[".pagination a:has-text('>')", ".pagination li.next a"],
        detail_row_selector="table.list tbody tr",
        detail_columns={"name": 0, "sku": 1, "quantity": 2, "unit_price": 3, "line_total": 4},
    )


PORTALS = {
    FetchSource.routestar_invoices: routestar_invoices,
    FetchSource.routestar_items: routestar_items,
    FetchSource.customer_connect: customer_connect,
}


def portal_for(source: FetchSource) -> PortalConfig:
    return PORTALS[source]()
