from __future__ import annotations

import pytest

from stock_hub.automation.navigator import NavigationTimings, Navigator, is_disabled
from stock_hub.automation.portals import routestar_invoices
from stock_hub.errors import AuthRedirectError, RetryableFetchError

from conftest import FakePage, invoice_row

LIST_URL = "https://portal.test/web/invoices/"


def _portal():
    portal = routestar_invoices()
    portal.base_url = "https://portal.test"
    return portal


def _timings(**overrides):
    values = dict(strategies=["load", "domcontentloaded", "commit", "fixed_wait"],
                  nav_timeout_ms=100, fixed_wait_ms=7, stabilize_ms=3, content_timeout_ms=5,
                  element_timeout_ms=5, settle_ms=11)
    values.update(overrides)
    return NavigationTimings(**values)


async def test_first_strategy_wins_without_retrying():
    page = FakePage(pages={LIST_URL: [[invoice_row("1001")]]})
    nav = Navigator(page, _portal(), _timings())

    used = await nav.goto(LIST_URL)

    assert used == "load"
    assert page.gotos == [(LIST_URL, "load")]
    assert page.waits == [3]


async def test_ladder_advances_once_per_failed_strategy():
    page = FakePage(pages={LIST_URL: [[invoice_row("1001")]]}, fail={LIST_URL: {"load", "domcontentloaded"}})
    nav = Navigator(page, _portal(), _timings())

    used = await nav.goto(LIST_URL)

    assert used == "commit"
    assert [s for _, s in page.gotos] == ["load", "domcontentloaded", "commit"]
    # commit-only loads wait the longer fixed delay
    assert page.waits == [7]


async def test_fixed_wait_fires_commit_then_sleeps():
    page = FakePage(pages={LIST_URL: [[]]}, fail={LIST_URL: {"load", "domcontentloaded"}})
    nav = Navigator(page, _portal(), _timings(strategies=["load", "domcontentloaded", "fixed_wait"]))

    used = await nav.goto(LIST_URL)

    assert used == "fixed_wait"
    assert page.gotos[-1] == (LIST_URL, "commit")
    assert page.waits[0] == 7


async def test_whole_ladder_failing_is_retryable_and_saves_diagnostics():
    page = FakePage(fail={LIST_URL: {"load", "domcontentloaded", "commit"}})
    nav = Navigator(page, _portal(), _timings())

    with pytest.raises(RetryableFetchError) as exc:
        await nav.goto(LIST_URL)

    assert len(exc.value.details["failures"]) == 4
    assert page.diagnostics == ["navigation_failed"]


async def test_login_redirect_is_fatal_not_a_strategy_failure():
    page = FakePage(pages={LIST_URL: [[]]}, redirect_to_login=1)
    nav = Navigator(page, _portal(), _timings())

    with pytest.raises(AuthRedirectError):
        await nav.goto(LIST_URL)
    assert len(page.gotos) == 1


async def test_missing_content_is_not_fatal():
    page = FakePage(pages={LIST_URL: [[]]})
    nav = Navigator(page, _portal(), _timings())
    await nav.goto(LIST_URL)

    assert await nav.wait_for_content() is False


async def test_pagination_stops_at_disabled_next_and_settles_after_each_click():
    page = FakePage(pages={LIST_URL: [[invoice_row("1")], [invoice_row("2")], [invoice_row("3")]]})
    nav = Navigator(page, _portal(), _timings())
    await nav.goto(LIST_URL)

    moves = 0
    while await nav.next_page():
        moves += 1

    assert moves == 2
    assert page.waits.count(11) == 2


def test_is_disabled_variants():
    assert is_disabled({"class": "page-link disabled"})
    assert is_disabled({"class": "", "parent_class": "next disabled"})
    assert is_disabled({"class": "", "aria_disabled": "true"})
    assert is_disabled({"class": "", "href": "#"})
    assert not is_disabled({"class": "page-link", "href": "/web/invoices/?page=2"})
