# -*- coding: utf-8 -*-
"""
Browser capability used by the fetch orchestrator.

The orchestrator only sees ``PortalSession``/``PortalPage``: navigate with a
timeout, wait for a selector in a given state, click, read table rows. The
Playwright implementation below keeps a persistent storage_state per portal
so logins survive between fetches.

Flow:
1. Open a browser context from the saved storage_state (if any)
2. No saved state -> log in and save a new storage_state
3. A login redirect during a fetch -> ``reauthenticate()`` drops the state and logs in again
"""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from playwright.async_api import (
    async_playwright, Browser, BrowserContext, Page, Playwright,
    Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError,
)

from stock_hub.automation.parsers import RowData, parse_table_rows
from stock_hub.automation.portals import PortalConfig
from stock_hub.errors import RetryableFetchError, LoginError
from stock_hub.logging_setup import automation_log_dir
from stock_hub.settings import settings

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Describes an element for next-page detection
_ELEMENT_INFO_JS = """
el => ({
    tag: el.tagName.toLowerCase(),
    class: el.className || '',
    disabled: el.hasAttribute('disabled') || el.disabled === true,
    aria_disabled: el.getAttribute('aria-disabled'),
    href: el.getAttribute('href'),
    parent_class: (el.parentElement && el.parentElement.className) || '',
    parent_disabled: !!(el.parentElement && el.parentElement.hasAttribute('disabled')),
    text: (el.textContent || '').trim(),
})
"""


class PortalPage(Protocol):
    @property
    def url(self) -> str: ...

    async def goto(self, url: str, wait_until: str, timeout_ms: int) -> None: ...

    async def wait_for_selector(self, selector: str, state: str, timeout_ms: int) -> None: ...

    async def click(self, selector: str, timeout_ms: int) -> None: ...

    async def read_table_rows(self, row_selector: str) -> List[RowData]: ...

    async def element_info(self, selector: str) -> Optional[Dict[str, Any]]: ...

    async def wait(self, ms: int) -> None: ...

    async def save_diagnostics(self, prefix: str) -> None: ...


class PortalSession(Protocol):
    async def open(self) -> PortalPage: ...

    async def reauthenticate(self) -> None: ...

    async def close(self) -> None: ...


# ============================================================================
# Playwright implementation
# ============================================================================

class PlaywrightPage:
    """PortalPage over a Playwright page; Playwright errors become RetryableFetchError."""

    def __init__(self, page: Page, portal: PortalConfig):
        self.page = page
        self.portal = portal

    @property
    def url(self) -> str:
        return self.page.url

    async def goto(self, url: str, wait_until: str, timeout_ms: int) -> None:
        try:
            await self.page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise RetryableFetchError(f"Timeout navigating to {url} ({wait_until}, {timeout_ms} ms)") from e
        except PlaywrightError as e:
            raise RetryableFetchError(f"Navigation to {url} failed: {e.message}") from e

    async def wait_for_selector(self, selector: str, state: str, timeout_ms: int) -> None:
        try:
            await self.page.wait_for_selector(selector, state=state, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise RetryableFetchError(f"Timeout waiting for {selector} ({state})") from e
        except PlaywrightError as e:
            raise RetryableFetchError(f"Waiting for {selector} failed: {e.message}") from e

    async def click(self, selector: str, timeout_ms: int) -> None:
        try:
            await self.page.click(selector, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise RetryableFetchError(f"Timeout clicking {selector}") from e
        except PlaywrightError as e:
            raise RetryableFetchError(f"Click on {selector} failed: {e.message}") from e

    async def read_table_rows(self, row_selector: str) -> List[RowData]:
        try:
            html = await self.page.content()
        except PlaywrightError as e:
            raise RetryableFetchError(f"Could not read page content: {e.message}") from e
        return parse_table_rows(html, row_selector)

    async def element_info(self, selector: str) -> Optional[Dict[str, Any]]:
        try:
            el = await self.page.query_selector(selector)
            if el is None:
                return None
            return await el.evaluate(_ELEMENT_INFO_JS)
        except PlaywrightError as e:
            raise RetryableFetchError(f"Could not inspect {selector}: {e.message}") from e

    async def wait(self, ms: int) -> None:
        await self.page.wait_for_timeout(ms)

    async def save_diagnostics(self, prefix: str) -> None:
        """Screenshot + HTML under logs/automation; failures are only logged."""
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        base = automation_log_dir(settings) / f"{self.portal.source.value}_{prefix}_{ts}"
        try:
            await self.page.screenshot(path=f"{base}.png", full_page=True)
            Path(f"{base}.html").write_text(await self.page.content(), encoding="utf-8")
            logger.info(f"Saved diagnostics: {base}.png / .html")
        except (PlaywrightError, OSError) as e:
            logger.warning(f"Could not save diagnostics for {prefix}: {e}")


class PlaywrightPortalSession:
    """One Chromium context per portal, reusing storage_state between runs."""

    def __init__(self, portal: PortalConfig, headless: Optional[bool] = None):
        self.portal = portal
        self.headless = settings.BROWSER_HEADLESS if headless is None else headless
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[PlaywrightPage] = None

    @property
    def _state_path(self) -> Path:
        return Path(self.portal.storage_state_path)

    async def open(self) -> PortalPage:
        if self._page is not None:
            return self._page

        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(headless=self.headless)
        state = str(self._state_path) if self._state_path.exists() else None
        self._context = await self._browser.new_context(user_agent=USER_AGENT, storage_state=state)
        self._page = PlaywrightPage(await self._context.new_page(), self.portal)

        if state is None:
            await self.login()
        else:
            logger.info(f"{self.portal.name}: reusing session from {self._state_path}")
        return self._page

    async def login(self) -> None:
        if not self.portal.username or not self.portal.password:
            raise LoginError(f"{self.portal.name} credentials are not configured")

        page = self._page.page
        logger.info(f"{self.portal.name}: logging in at {self.portal.login_url}")
        await self._page.goto(self.portal.login_url, "domcontentloaded", settings.NAV_TIMEOUT_MS)

        cookie_btn = page.locator(self.portal.cookie_accept_selector)
        if await cookie_btn.count() > 0:
            try:
                await cookie_btn.first.click(timeout=3000)
            except PlaywrightError as e:
                logger.debug(f"Cookie banner not dismissed: {e.message}")

        user_field = page.locator(self.portal.user_selector)
        if await user_field.count() == 0:
            await self._page.save_diagnostics("no_login_form")
            raise LoginError(f"{self.portal.name}: login form not found at {page.url}")

        await user_field.first.fill(self.portal.username)
        await page.locator(self.portal.pass_selector).first.fill(self.portal.password)
        await page.locator(self.portal.submit_selector).first.click()
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=settings.NAV_TIMEOUT_MS)
        except PlaywrightTimeoutError as e:
            await self._page.save_diagnostics("post_login_timeout")
            raise RetryableFetchError(f"{self.portal.name}: timeout after login submit") from e

        if self.portal.is_login_url(page.url):
            error_text = ""
            error_el = page.locator(self.portal.login_error_selector)
            if await error_el.count() > 0:
                error_text = (await error_el.first.text_content() or "").strip()
            await self._page.save_diagnostics("login_failed")
            raise LoginError(f"{self.portal.name} login failed: {error_text or 'still on login page after submit'}")

        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        await self._context.storage_state(path=str(self._state_path))
        logger.info(f"{self.portal.name}: login successful, session saved to {self._state_path}")

    async def reauthenticate(self) -> None:
        logger.warning(f"{self.portal.name}: session expired, logging in again")
        if self._state_path.exists():
            self._state_path.unlink()
        if self._page is None:
            await self.open()
            return
        await self._context.clear_cookies()
        await self.login()

    async def close(self) -> None:
        try:
            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
        finally:
            if self._pw is not None:
                await self._pw.stop()
            self._pw = self._browser = self._context = self._page = None


def playwright_session_factory(portal: PortalConfig) -> PortalSession:
    return PlaywrightPortalSession(portal)
