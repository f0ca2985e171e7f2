from contextlib import asynccontextmanager

import pytest
from playwright.async_api import Error as PlaywrightError
from scrapy import Request
from scrapy.http import HtmlResponse

from conftest import SIGNIN_HTML, listing_html, order_html, order_id, pagination_html

from order_scraper.db import StateStore
from order_scraper.errors import CollectionCancelled
from order_scraper.fetch_queue import FetchResponse
from order_scraper.finalize import OUTCOME_COMPLETED
from order_scraper.session import CollectorSession
from order_scraper.spiders.order_history import OrderHistorySpider

START = "https://www.amazon.com/your-orders/orders"


class _FakeLocator:
    def __init__(self, page):
        self.page = page
        self.first = self

    async def click(self):
        self.page.clicks += 1
        if self.page.close_on_click:
            self.page.closed = True
            for cb in self.page.handlers.get("close", []):
                cb(self.page)
            raise PlaywrightError("Target page, context or browser has been closed")
        self.page.url = self.page.links[self.page.url]


class _FakePage:
    """Enough of a Playwright page for the click-through loop."""

    def __init__(self, url, documents, links, close_on_click=False):
        self.url = url
        self.documents = documents
        self.links = links
        self.close_on_click = close_on_click
        self.handlers = {}
        self.closed = False
        self.clicks = 0
        self.gotos = []

    def on(self, event, cb):
        self.handlers.setdefault(event, []).append(cb)

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True

    async def content(self):
        return self.documents[self.url]

    def locator(self, selector):
        return _FakeLocator(self)

    @asynccontextmanager
    async def expect_navigation(self, **kwargs):
        yield

    async def goto(self, url, **kwargs):
        self.gotos.append(url)
        self.url = url


def _spider(tmp_path, **kwargs):
    kwargs.setdefault("scroll", 0)
    kwargs.setdefault("fetch_delay", 0)
    spider = OrderHistorySpider(state_db=str(tmp_path / "state.db"), tab_id="tab-test", **kwargs)
    spider.store = StateStore(spider.state_db)
    spider.store.init_db()
    return spider


def _response(url, html, status=200):
    return HtmlResponse(url=url, body=html.encode("utf-8"), encoding="utf-8", status=status, request=Request(url))


def _start(spider, strategy):
    spider.session = CollectorSession(spider.store, progress=None)
    spider.session.start(tab_id=spider.tab_id, strategy=strategy, next_url=spider.start_url)


def _two_page_site():
    page2 = START + "?startIndex=10"
    documents = {
        START: listing_html(
            [order_html(order_id(1), "May 2, 2024"), order_html(order_id(2), "May 1, 2024")],
            pagination=pagination_html(next_href="/your-orders/orders?startIndex=10"),
        ),
        page2: listing_html(
            [order_html(order_id(2), "May 1, 2024"), order_html(order_id(3), "April 9, 2024")],
            pagination=pagination_html(disabled=True, selected=2),
        ),
    }
    return documents, {START: page2}


@pytest.mark.asyncio
async def test_click_through_collects_every_page(tmp_path):
    spider = _spider(tmp_path, strategy="click")
    _start(spider, "click")
    documents, links = _two_page_site()
    page = _FakePage(START, documents, links)

    result = await spider._click_through(page, _response(START, documents[START]))

    assert result.outcome == OUTCOME_COMPLETED
    assert [o.order_id for o in result.orders] == [order_id(1), order_id(2), order_id(3)]
    assert result.stats["pages_processed"] == 2
    assert page.clicks == 1
    assert page.closed is True
    assert CollectorSession(spider.store, progress=None).resume() is False


@pytest.mark.asyncio
async def test_each_page_load_resumes_from_the_store(tmp_path):
    spider = _spider(tmp_path, strategy="click")
    _start(spider, "click")
    documents, links = _two_page_site()
    page = _FakePage(START, documents, links)

    assert await spider.handle_page_load(page) is None

    persisted = CollectorSession(spider.store, progress=None)
    assert persisted.resume()
    assert persisted.next_url() == START + "?startIndex=10"
    assert [o.order_id for o in persisted.orders()] == [order_id(1), order_id(2)]

    # A different spider instance picks up where the first one navigated to.
    other = _spider(tmp_path, strategy="click")
    result = await other.handle_page_load(page)
    assert [o.order_id for o in result.orders] == [order_id(1), order_id(2), order_id(3)]


@pytest.mark.asyncio
async def test_max_pages_stops_click_through(tmp_path):
    spider = _spider(tmp_path, strategy="click", max_pages=1)
    _start(spider, "click")
    documents, links = _two_page_site()
    page = _FakePage(START, documents, links)

    result = await spider._click_through(page, _response(START, documents[START]))

    assert result.stats["pages_processed"] == 1
    assert page.clicks == 0


@pytest.mark.asyncio
async def test_closing_the_tab_cancels_click_through(tmp_path):
    spider = _spider(tmp_path, strategy="click")
    _start(spider, "click")
    documents, links = _two_page_site()
    page = _FakePage(START, documents, links, close_on_click=True)

    with pytest.raises(CollectionCancelled):
        await spider._click_through(page, _response(START, documents[START]))

    assert CollectorSession(spider.store, progress=None).resume() is False


@pytest.mark.asyncio
async def test_signin_during_click_through_finalizes_partial_results(tmp_path):
    spider = _spider(tmp_path, strategy="click")
    _start(spider, "click")
    documents, links = _two_page_site()
    documents[START + "?startIndex=10"] = SIGNIN_HTML
    page = _FakePage(START, documents, links)

    result = await spider._click_through(page, _response(START, documents[START]))

    assert result.auth_required is True
    assert [o.order_id for o in result.orders] == [order_id(1), order_id(2)]


def _offset_site(total, per_page=10, auth_at=None):
    async def download(url):
        offset = int(url.rsplit("startIndex=", 1)[1]) if "startIndex=" in url else 0
        if offset == auth_at:
            return FetchResponse(401, "", url)
        ids = range(offset + 1, min(offset + per_page, total) + 1)
        return FetchResponse(200, listing_html([order_html(order_id(n)) for n in ids], total=total), url)

    return download


@pytest.mark.asyncio
async def test_offset_strategy_yields_rows_for_every_page(tmp_path):
    spider = _spider(tmp_path)
    _start(spider, "offset")
    spider._download = _offset_site(25)
    first = listing_html([order_html(order_id(n)) for n in range(1, 11)], total=25)

    rows = [row async for row in spider.parse_listing(_response(START, first))]

    assert len(rows) == 25
    assert {r["order_id"] for r in rows} == {order_id(n) for n in range(1, 26)}
    assert spider.result.stats["pages_processed"] == 3
    assert spider.result.failures == []


@pytest.mark.asyncio
async def test_offset_strategy_keeps_partial_results_on_auth_failure(tmp_path):
    spider = _spider(tmp_path, fetch_concurrency=1)
    _start(spider, "offset")
    spider._download = _offset_site(35, auth_at=20)
    first = listing_html([order_html(order_id(n)) for n in range(1, 11)], total=35)

    rows = [row async for row in spider.parse_listing(_response(START, first))]

    assert {r["order_id"] for r in rows} == {order_id(n) for n in range(1, 21)}
    assert spider.result.auth_required is True
    assert [f["status"] for f in spider.result.failures] == ["auth", "skipped"]
    assert spider.result.failures[0]["message"].startswith("authentication required")


@pytest.mark.asyncio
async def test_offset_strategy_probes_when_total_is_unknown(tmp_path):
    spider = _spider(tmp_path)
    _start(spider, "offset")

    async def download(url):
        offset = int(url.rsplit("startIndex=", 1)[1])
        ids = range(offset + 1, offset + 11) if offset < 20 else []
        return FetchResponse(200, listing_html([order_html(order_id(n)) for n in ids]), url)

    spider._download = download
    first = listing_html(
        [order_html(order_id(n)) for n in range(1, 11)],
        pagination=pagination_html(next_href="/your-orders/orders?startIndex=10"),
    )

    rows = [row async for row in spider.parse_listing(_response(START, first))]

    assert len(rows) == 20
    assert spider.result.stats["pages_processed"] == 3


@pytest.mark.asyncio
async def test_signin_first_page_ends_with_auth_required(tmp_path):
    spider = _spider(tmp_path)
    _start(spider, "offset")

    rows = [row async for row in spider.parse_listing(_response(START, SIGNIN_HTML))]

    assert rows == []
    assert spider.result.auth_required is True


def test_start_requests_begins_a_session(tmp_path):
    spider = OrderHistorySpider(state_db=str(tmp_path / "state.db"), tab_id="tab-new")

    (request,) = list(spider.start_requests())

    assert request.url == START
    assert request.meta["playwright"] is True
    assert request.meta["playwright_include_page"] is True
    status = CollectorSession(spider.store, progress=None).status()
    assert status["is_active"] is True
    assert status["tab_id"] == "tab-new"
    assert status["strategy"] == "offset"


def test_resume_continues_a_persisted_click_session(tmp_path):
    db = str(tmp_path / "state.db")
    earlier = CollectorSession(StateStore(db), progress=None)
    earlier.start(tab_id="tab-old", strategy="click", next_url=START)
    earlier.record_navigation(START + "?startIndex=30")

    spider = OrderHistorySpider(state_db=db, tab_id="tab-new", resume=1)
    (request,) = list(spider.start_requests())

    assert request.url == START + "?startIndex=30"
    assert spider.strategy == "click"
    assert CollectorSession(StateStore(db), progress=None).status()["tab_id"] == "tab-new"


def test_spider_closed_leaves_click_session_resumable_on_shutdown(tmp_path):
    spider = _spider(tmp_path, strategy="click")
    _start(spider, "click")

    spider.spider_closed(spider, "shutdown")
    assert CollectorSession(spider.store, progress=None).resume() is True

    spider.spider_closed(spider, "closespider_timeout")
    assert CollectorSession(spider.store, progress=None).resume() is False


def test_unknown_strategy_is_rejected():
    with pytest.raises(ValueError):
        OrderHistorySpider(strategy="scroll")
