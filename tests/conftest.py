from __future__ import annotations

import os
import tempfile
from decimal import Decimal
from typing import Any, Dict, List, Optional

# keep logs and browser state out of the source tree
os.environ.setdefault("STOCK_HUB_DATA_ROOT", tempfile.mkdtemp(prefix="stock-hub-tests-"))

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from stock_hub import database
from stock_hub.automation.parsers import RowData
from stock_hub.database import Base, get_session_context
from stock_hub.errors import RetryableFetchError
from stock_hub.services.canonical import invalidate_lookup_cache
from stock_hub.services.stock import StockLedger
from stock_hub.services.purchases import PurchaseService


@pytest.fixture(autouse=True)
def _fresh_alias_cache():
    invalidate_lookup_cache()
    yield
    invalidate_lookup_cache()


@pytest.fixture
async def engine():
    import stock_hub.db_models  # noqa: F401

    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    database.configure_engine(eng)
    yield eng
    await eng.dispose()
    database._engine = None
    database._async_session_factory = None


@pytest.fixture
async def db(engine):
    async with get_session_context() as session:
        yield session


async def make_item(db, sku: str = "WHT-1", name: str = "Wheat", actor: str = "tester"):
    return await StockLedger(db).create_item(sku, name, actor)


async def make_purchase(db, item_id: int, quantity, price, actor: str = "tester", **extra):
    data = {"inventory_item_id": item_id, "quantity": Decimal(str(quantity)),
            "purchase_price": Decimal(str(price)), **extra}
    return await PurchaseService(db).create_purchase(data, actor)


# ============================================================================
# Fake browser capability
# ============================================================================

class FakePage:
    """
    Scripted PortalPage.

    ``pages`` maps a URL to a list of listing pages (each a list of RowData);
    clicking the next control advances through them. ``fail`` maps a URL to
    the set of strategies that time out for it.
    """

    def __init__(
        self,
        pages: Optional[Dict[str, List[List[RowData]]]] = None,
        details: Optional[Dict[str, List[RowData]]] = None,
        fail: Optional[Dict[str, set]] = None,
        redirect_to_login: int = 0,
        login_url: str = "https://portal.test/web/login/",
    ):
        self.pages = pages or {}
        self.details = details or {}
        self.fail = fail or {}
        self.redirect_to_login = redirect_to_login
        self.login_url = login_url
        self._url = "about:blank"
        self._page_index = 0
        self.gotos: List[tuple] = []
        self.waits: List[int] = []
        self.clicks: List[str] = []
        self.diagnostics: List[str] = []

    @property
    def url(self) -> str:
        return self._url

    async def goto(self, url: str, wait_until: str, timeout_ms: int) -> None:
        self.gotos.append((url, wait_until))
        if wait_until in self.fail.get(url, set()):
            raise RetryableFetchError(f"Timeout navigating to {url} ({wait_until})")
        if self.redirect_to_login > 0:
            self.redirect_to_login -= 1
            self._url = self.login_url
            return
        self._url = url
        self._page_index = 0

    async def wait_for_selector(self, selector: str, state: str, timeout_ms: int) -> None:
        if not self._rows():
            raise RetryableFetchError(f"Timeout waiting for {selector} ({state})")

    async def click(self, selector: str, timeout_ms: int) -> None:
        self.clicks.append(selector)
        if "next" in selector or "Next" in selector:
            self._page_index += 1

    def _rows(self) -> List[RowData]:
        if self._url in self.details:
            return self.details[self._url]
        listing = self.pages.get(self._url, [])
        if self._page_index < len(listing):
            return listing[self._page_index]
        return []

    async def read_table_rows(self, row_selector: str) -> List[RowData]:
        return list(self._rows())

    async def element_info(self, selector: str) -> Optional[Dict[str, Any]]:
        listing = self.pages.get(self._url)
        if listing is None or ("next" not in selector and "Next" not in selector):
            return None
        if self._page_index + 1 >= len(listing):
            return {"class": "disabled", "href": "#"}
        return {"class": "", "href": "/next"}

    async def wait(self, ms: int) -> None:
        self.waits.append(ms)

    async def save_diagnostics(self, prefix: str) -> None:
        self.diagnostics.append(prefix)


class FakeSession:
    def __init__(self, page: FakePage):
        self.page = page
        self.opened = 0
        self.reauthenticated = 0
        self.closed = 0

    async def open(self) -> FakePage:
        self.opened += 1
        return self.page

    async def reauthenticate(self) -> None:
        self.reauthenticated += 1

    async def close(self) -> None:
        self.closed += 1


def invoice_row(number: str, total: str = "$40.00", date: str = "10/01/2026", customer: str = "Acme",
                status: str = "Complete", detail: Optional[str] = None) -> RowData:
    cells = ["", number, date, "", "", "", customer, "Sale", "", status, "", "", total]
    links: List[Optional[str]] = [None] * len(cells)
    links[1] = detail
    return RowData(cells=cells, links=links, classes=[""] * len(cells), text=" ".join(cells))


def line_row(name: str, qty: str, rate: str, amount: str) -> RowData:
    cells = [name, "", qty, rate, amount]
    return RowData(cells=cells, links=[None] * 5, classes=[""] * 5, text=" ".join(cells))


@pytest.fixture
def fake_page():
    return FakePage()
