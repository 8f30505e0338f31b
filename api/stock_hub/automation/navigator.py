# -*- coding: utf-8 -*-
"""
Navigation with a strategy ladder, content waits and pagination.

Each navigation tries the configured strategies in order (strictest first)
and moves to the next one as soon as a strategy fails; a strategy is never
retried. When the whole ladder fails the caller gets a RetryableFetchError
and decides whether to retry the fetch. Landing on the login page is a
FatalFetchError (AuthRedirectError), never a strategy failure.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from stock_hub.automation.browser import PortalPage
from stock_hub.automation.portals import PortalConfig
from stock_hub.errors import RetryableFetchError, AuthRedirectError

logger = logging.getLogger(__name__)

FIXED_WAIT = "fixed_wait"
_BLANK_URLS = ("", "about:blank")


@dataclass
class NavigationTimings:
    strategies: List[str]
    nav_timeout_ms: int = 90000
    fixed_wait_ms: int = 10000
    stabilize_ms: int = 2000
    content_timeout_ms: int = 30000
    element_timeout_ms: int = 20000
    settle_ms: int = 3000

    @classmethod
    def from_settings(cls, s) -> "NavigationTimings":
        return cls(
            strategies=list(s.NAV_STRATEGIES),
            nav_timeout_ms=s.NAV_TIMEOUT_MS,
            fixed_wait_ms=s.NAV_FIXED_WAIT_MS,
            stabilize_ms=s.NAV_STABILIZE_MS,
            content_timeout_ms=s.CONTENT_TIMEOUT_MS,
            element_timeout_ms=s.ELEMENT_TIMEOUT_MS,
            settle_ms=s.PAGE_SETTLE_MS,
        )


def is_disabled(info: Dict[str, Any]) -> bool:
    """Next-page control counts as exhausted when it or its parent is disabled or it links nowhere."""
    cls = (info.get("class") or "").lower()
    parent_cls = (info.get("parent_class") or "").lower()
    href = (info.get("href") or "").strip().lower()
    return (
        "disabled" in cls.split()
        or "disabled" in parent_cls.split()
        or bool(info.get("disabled"))
        or bool(info.get("parent_disabled"))
        or str(info.get("aria_disabled") or "").lower() == "true"
        or href in ("#", "javascript:void(0)", "javascript:void(0);")
    )


class Navigator:
    def __init__(self, page: PortalPage, portal: PortalConfig, timings: NavigationTimings):
        self.page = page
        self.portal = portal
        self.timings = timings

    def check_auth(self) -> None:
        if self.portal.is_login_url(self.page.url):
            raise AuthRedirectError(self.page.url)

    async def goto(self, url: str) -> str:
        """
        Walk the ladder until one strategy lands on ``url``.

        Returns the strategy that succeeded.

        Raises:
            AuthRedirectError: the portal sent us to its login page
            RetryableFetchError: every strategy failed
        """
        failures: List[str] = []
        for strategy in self.timings.strategies:
            try:
                if strategy == FIXED_WAIT:
                    await self._fire_and_wait(url)
                else:
                    await self.page.goto(url, strategy, self.timings.nav_timeout_ms)
            except RetryableFetchError as e:
                logger.warning(f"{self.portal.name}: '{strategy}' failed for {url}: {e}")
                failures.append(f"{strategy}: {e}")
                self.check_auth()
                continue

            self.check_auth()
            # commit-only loads need longer to render
            await self.page.wait(self.timings.fixed_wait_ms if strategy == "commit" else self.timings.stabilize_ms)
            self.check_auth()
            logger.info(f"{self.portal.name}: navigated to {url} using '{strategy}'")
            return strategy

        await self.page.save_diagnostics("navigation_failed")
        raise RetryableFetchError(
            f"All navigation strategies failed for {url}",
            details={"url": url, "failures": failures},
        )

    async def _fire_and_wait(self, url: str) -> None:
        try:
            await self.page.goto(url, "commit", self.timings.fixed_wait_ms)
        except RetryableFetchError as e:
            logger.info(f"{self.portal.name}: fire-and-wait navigation still pending ({e})")
        await self.page.wait(self.timings.fixed_wait_ms)
        if self.page.url in _BLANK_URLS:
            raise RetryableFetchError(f"Page never left {self.page.url or 'blank'} for {url}")

    async def wait_for_content(self, selector: Optional[str] = None) -> bool:
        """Non-fatal: a missing table is logged and the fetch goes on."""
        selector = selector or self.portal.content_selector
        try:
            await self.page.wait_for_selector(selector, "attached", self.timings.content_timeout_ms)
            return True
        except RetryableFetchError as e:
            self.check_auth()
            logger.warning(f"{self.portal.name}: content '{selector}' not found, continuing: {e}")
            return False

    async def find_next(self) -> Optional[str]:
        """Selector of an enabled next-page control, or None when pagination is exhausted."""
        for selector in self.portal.next_selectors:
            info = await self.page.element_info(selector)
            if info is None:
                continue
            if is_disabled(info):
                return None
            return selector
        return None

    async def next_page(self) -> bool:
        selector = await self.find_next()
        if selector is None:
            return False
        await self.page.click(selector, self.timings.element_timeout_ms)
        await self.page.wait(self.timings.settle_ms)
        self.check_auth()
        return True

    async def sort_by_number(self, ascending: bool) -> None:
        """Best effort: click the number column header (twice for descending)."""
        if not self.portal.sort_selector:
            return
        try:
            await self.page.click(self.portal.sort_selector, self.timings.element_timeout_ms)
            if not ascending:
                await self.page.click(self.portal.sort_selector, self.timings.element_timeout_ms)
            await self.page.wait(self.timings.settle_ms)
        except RetryableFetchError as e:
            logger.warning(f"{self.portal.name}: could not sort listing: {e}")
