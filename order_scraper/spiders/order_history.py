"""Order-history export spider.

Collects every order from a signed-in order-history listing and yields one row
per item, newest order first:

1. Load the start page in the stored browser context and scroll until lazily
   rendered orders stop appearing.
2. Parse the page, read the pagination, contribute the orders to the session.
3. Reach the remaining pages with one of two strategies (``-a strategy=...``):
   - ``offset``: build every page URL from the total order count and fetch them
     through the rate-limited queue (2 workers, 1s spacing, 2^n backoff).
   - ``click``: click "next" in the live tab. Each page load is handled as if by
     a new process: state is re-read from the SQLite store, never kept in memory,
     so an interrupted run can continue with ``-a resume=1``.
4. Finalize: dedupe by order id, sort by date, yield rows to the export pipeline.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from functools import partial
from typing import Optional

import scrapy
from playwright.async_api import Error as PlaywrightError
from scrapy import Request, signals
from scrapy.utils.defer import maybe_deferred_to_future

from order_scraper.db import StateStore
from order_scraper.errors import AuthRequired, CollectionCancelled
from order_scraper.fetch_queue import (
    AUTH_STATUSES,
    PAGE_OK,
    PAGE_SIGNIN,
    RETRY_STATUSES,
    FetchQueue,
    FetchResponse,
    PageFetcher,
    PageResult,
)
from order_scraper.finalize import OUTCOME_NO_ORDERS, CollectionResult
from order_scraper.models import NextPageHandle, PaginationInfo
from order_scraper.pagination import (
    OFFSET_PARAM,
    ORDERS_PER_PAGE,
    STRATEGIES,
    STRATEGY_CLICK,
    STRATEGY_OFFSET,
    compute_offsets,
    detect_click_through,
    detect_offset,
    page_url,
)
from order_scraper.parse_helpers import ORDER_CARD_SELECTORS, looks_like_signin, parse_orders
from order_scraper.session import CollectorSession

ORDERS_URL = "https://www.amazon.com/your-orders/orders"

# Safety ceilings for runs without an explicit max_pages.
MAX_PAGES_CEILING = 1000
MAX_SCROLL_ROUNDS = 100


class OrderHistorySpider(scrapy.Spider):
    name = "order_history"
    # Auth and throttling statuses reach the callbacks instead of being dropped.
    handle_httpstatus_list = sorted(AUTH_STATUSES | RETRY_STATUSES)

    def __init__(
        self,
        start_url: str = ORDERS_URL,          # Listing page to start from (filters in the query are kept)
        strategy: str = STRATEGY_OFFSET,      # "offset" (fetch all page URLs) or "click" (click next)
        orders_per_page: int = ORDERS_PER_PAGE,
        offset_param: str = OFFSET_PARAM,     # Query parameter carrying the start index
        fetch_concurrency: int = 2,           # Offset strategy: pages in flight at once
        fetch_delay: float = 1.0,             # Offset strategy: seconds between fetch starts
        max_attempts: int = 4,                # Attempts per page on 429/503
        backoff_base: float = 2.0,            # Retry wait = backoff_base ** attempt seconds
        max_pages: int = 0,                   # Page cap (0 = no cap beyond the safety ceiling)
        scroll: int = 1,                      # Scroll the live page to trigger lazy rendering (1 = enabled)
        scroll_idle_ms: int = 800,            # Wait between scroll rounds
        resume: int = 0,                      # Continue a persisted click-through session (1 = enabled)
        state_db: Optional[str] = None,       # SQLite state path (default STATE_DB setting)
        tab_id: Optional[str] = None,         # Handle identifying the owning tab
        *args,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        if strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES}, got {strategy!r}")
        self.start_url = start_url
        self.strategy = strategy
        self.orders_per_page = int(orders_per_page) if int(orders_per_page) > 0 else ORDERS_PER_PAGE
        self.offset_param = offset_param
        self.fetch_concurrency = int(fetch_concurrency)
        self.fetch_delay = float(fetch_delay)
        self.max_attempts = int(max_attempts)
        self.backoff_base = float(backoff_base)
        self.max_pages = int(max_pages)
        self.scroll = int(scroll)
        self.scroll_idle_ms = int(scroll_idle_ms)
        self.resume = int(resume)
        self.state_db = state_db
        self.tab_id = tab_id or f"tab-{uuid.uuid4().hex[:8]}"
        self.store: Optional[StateStore] = None
        self.session: Optional[CollectorSession] = None
        self.result: Optional[CollectionResult] = None

    # -------------- Scrapy lifecycle hooks ----------------

    @classmethod
    def from_crawler(cls, crawler, *args, **kwargs):  # type: ignore[override]
        spider = super().from_crawler(crawler, *args, **kwargs)
        crawler.signals.connect(spider.spider_closed, signal=signals.spider_closed)
        return spider

    def _page_cap(self) -> int:
        return self.max_pages if self.max_pages > 0 else MAX_PAGES_CEILING

    def _new_session(self) -> CollectorSession:
        return CollectorSession(self.store, orders_per_page=self.orders_per_page)

    def start_requests(self):  # type: ignore[override]
        """Start a fresh session, or pick up a persisted click-through session when resume=1."""
        if self.store is None:
            path = self.state_db or (self.settings.get("STATE_DB") if getattr(self, "settings", None) else None)
            self.store = StateStore(path)
        self.store.init_db()
        session = self._new_session()
        url = self.start_url
        if self.resume and session.resume():
            next_url = session.next_url()
            if session.strategy == STRATEGY_CLICK and next_url:
                # A new browser tab takes over the persisted session.
                self.strategy = STRATEGY_CLICK
                self.store.set({"export_tab_id": self.tab_id})
                url = next_url
                self.logger.info(f"[RESUME] strategy=click pages_processed={session.status()['pages_processed']} url={url}")
            else:
                self.logger.info(f"[RESUME] persisted strategy={session.strategy} cannot resume mid-way; restarting")
                session.start(tab_id=self.tab_id, strategy=self.strategy, next_url=url)
        else:
            session.start(tab_id=self.tab_id, strategy=self.strategy, next_url=url)
        self.session = session
        self._log_event("start", strategy=self.strategy, url=url, tab=self.tab_id)
        yield Request(
            url,
            callback=self.parse_listing,
            errback=self._listing_errback,
            meta=self._playwright_meta(include_page=True),
            dont_filter=True,
        )

    async def start(self):  # Scrapy 2.13+ async entrypoint
        for r in self.start_requests():
            yield r

    def spider_closed(self, spider, reason):
        """Terminal outcomes clear the session; an interrupted click-through stays resumable."""
        if self.store is None:
            return
        session = self._new_session()
        if not session.resume():
            return
        if reason == "shutdown" and session.strategy == STRATEGY_CLICK:
            self.logger.info("[SESSION] left resumable after shutdown; rerun with -a resume=1 -a strategy=click")
            return
        if reason == "closespider_timeout":
            self.logger.warning("[SESSION] export time budget exhausted; cancelling")
        session.cancel(reason=reason)

    def _listing_errback(self, failure):
        self.logger.error(f"[LISTING-FAIL] url={failure.request.url} err={failure.value!r}")
        page = failure.request.meta.get("playwright_page")
        if page:
            asyncio.ensure_future(page.close())
        if self.session:
            self.session.cancel(reason="start_page_failed")

    # -------------- Listing page ----------------

    async def parse_listing(self, response: scrapy.http.Response):
        page = response.meta.get("playwright_page")

        if response.status in RETRY_STATUSES:
            attempt = int(response.meta.get("retry_attempt", 0)) + 1
            if page:
                await page.close()
            if attempt >= self.max_attempts:
                self.logger.error(f"[LISTING-FAIL] status={response.status} attempts={attempt} url={response.url}")
                self.session.cancel(reason="start_page_throttled")
                return
            delay = self.backoff_base ** attempt
            self.logger.warning(f"[{response.status}] listing attempt={attempt} retry_in={delay:.1f}s url={response.url}")
            await asyncio.sleep(delay)
            yield response.request.replace(
                meta={**self._playwright_meta(include_page=True), "retry_attempt": attempt},
                dont_filter=True,
            )
            return

        try:
            if self.strategy == STRATEGY_CLICK:
                result = await self._click_through(page, response)
            else:
                result = await self._fetch_all(page, response)
        except CollectionCancelled as e:
            self.logger.info(f"[CANCELLED] {e}")
            return

        if result is None:
            return
        self.result = result
        self._log_event("summary", outcome=result.outcome, auth_required=result.auth_required, **result.stats)
        if result.outcome == OUTCOME_NO_ORDERS:
            self.logger.warning("[EXPORT] no orders found; check that the start URL is the order-history page")
            return
        for row in result.rows:
            yield row

    def _is_auth_page(self, response: scrapy.http.Response, html: str) -> bool:
        return response.status in AUTH_STATUSES or looks_like_signin(html)

    # -------------- URL-offset strategy ----------------

    async def _fetch_all(self, page, response: scrapy.http.Response) -> Optional[CollectionResult]:
        html = await self._rendered_html(page, response)
        if page:
            await page.close()
        session = self.session
        if self._is_auth_page(response, html):
            session.mark_auth_required(str(AuthRequired(response.url, response.status)))
            return session.complete(self.tab_id)

        info = detect_offset(html, response.url, self.orders_per_page, self.offset_param)
        added = session.contribute_page(parse_orders(html), info)
        self._log_event("page", strategy=STRATEGY_OFFSET, page=info.current_page_number, added=added, url=response.url)
        if info.total_order_count is None:
            self.logger.info("[PAGINATION] total order count not shown; probing pages until one comes back empty")
        else:
            self.logger.info(
                f"[PAGINATION] total_orders={info.total_order_count} pages={info.total_pages(self.orders_per_page)}"
            )

        queue = FetchQueue(
            concurrency=self.fetch_concurrency,
            delay=self.fetch_delay,
            is_cancelled=session.is_cancelled,
        )
        fetcher = PageFetcher(
            self._download,
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            is_cancelled=session.is_cancelled,
        )
        try:
            if info.total_order_count is not None:
                await self._fetch_known_pages(queue, fetcher, info, response.url)
            elif info.has_next_page:
                await self._probe_pages(queue, fetcher, info, response.url)
        finally:
            # Nothing may still be running against the store once the session ends.
            await queue.join()
        return session.complete(self.tab_id)

    async def _fetch_known_pages(self, queue: FetchQueue, fetcher: PageFetcher, info: PaginationInfo, base_url: str):
        offsets = [o for o in compute_offsets(info.total_order_count, self.orders_per_page) if o != info.current_offset]
        offsets = offsets[: max(0, self._page_cap() - 1)]
        futures = []
        for off in offsets:
            url = page_url(base_url, off, self.offset_param)
            futures.append(queue.enqueue(partial(fetcher.fetch_page, url, off, off // self.orders_per_page + 1)))
        self.logger.info(f"[QUEUE] enqueued={len(futures)} concurrency={queue.concurrency} delay={queue.delay}s")
        # Contribute in page order so the merge order does not depend on network timing.
        for fut in futures:
            try:
                result = await fut
            except CollectionCancelled:
                raise
            except Exception as e:
                self.logger.error(f"[QUEUE] task crashed err={e!r}")
                self.session.record_failure({"url": None, "status": "failed", "error": repr(e)})
                continue
            self._absorb(result, info.total_order_count)

    async def _probe_pages(self, queue: FetchQueue, fetcher: PageFetcher, info: PaginationInfo, base_url: str):
        offset = (info.current_offset or 0) + self.orders_per_page
        pages = 1
        while pages < self._page_cap():
            url = page_url(base_url, offset, self.offset_param)
            result = await queue.enqueue(partial(fetcher.fetch_page, url, offset, offset // self.orders_per_page + 1))
            self._absorb(result, None)
            pages += 1
            if result.status != PAGE_OK or not result.orders:
                break
            offset += self.orders_per_page

    def _absorb(self, result: PageResult, total_orders: Optional[int]):
        session = self.session
        info = PaginationInfo(current_page_number=result.page_number, total_order_count=total_orders, current_offset=result.offset)
        if result.status == PAGE_OK:
            added = session.contribute_page(result.orders, info)
            self._log_event("page", strategy=STRATEGY_OFFSET, page=result.page_number, added=added, attempts=result.attempts, url=result.url)
            return
        if result.status == PAGE_SIGNIN:
            # Zero-order page, but collection can no longer be trusted to be complete.
            session.contribute_page([], info)
        err = result.to_error()
        if isinstance(err, AuthRequired):
            session.mark_auth_required(f"page={result.page_number} {err}")
        session.record_failure(result.failure_record())

    async def _download(self, url: str) -> FetchResponse:
        """Network fetch for the queue: same signed-in browser context as the listing."""
        request = Request(url, meta=self._playwright_meta(include_page=False), dont_filter=True)
        response = await maybe_deferred_to_future(self.crawler.engine.download(request))
        return FetchResponse(status=response.status, text=getattr(response, "text", "") or "", url=response.url)

    # -------------- Click-through strategy ----------------

    async def _click_through(self, page, response: scrapy.http.Response) -> Optional[CollectionResult]:
        if page is None:
            self.logger.error("[CLICK] strategy=click needs a live Playwright page")
            self.session.cancel(reason="no_page")
            return None
        page.on("close", lambda *_: self._on_tab_closed())
        try:
            if response.status in AUTH_STATUSES:
                self.session.mark_auth_required(str(AuthRequired(response.url, response.status)))
                return self.session.complete(self.tab_id)
            while True:
                result = await self.handle_page_load(page)
                if result is not None:
                    return result
        except PlaywrightError as e:
            if page.is_closed():
                self._on_tab_closed()
                raise CollectionCancelled("tab closed") from e
            raise
        finally:
            if not page.is_closed():
                await page.close()

    async def handle_page_load(self, page) -> Optional[CollectionResult]:
        """Everything one page load does; returns the result once the last page is in.

        Builds its own session from the store on every call, exactly as a freshly
        injected page script would.
        """
        session = self._new_session()
        if not session.resume():
            raise CollectionCancelled("no active session on page load")
        html = await self._scroll_and_read(page)
        if looks_like_signin(html):
            session.mark_auth_required(str(AuthRequired(page.url)))
            return session.complete(self.tab_id)

        info = detect_click_through(html, page.url, self.orders_per_page, self.offset_param)
        added = session.contribute_page(parse_orders(html), info)
        self._log_event("page", strategy=STRATEGY_CLICK, page=info.current_page_number, added=added, url=page.url)
        pages_processed = session.status()["pages_processed"]
        handle = info.next_page_handle
        if session.is_last_page(info) or handle is None:
            return session.complete(self.tab_id)
        if pages_processed >= self._page_cap():
            self.logger.info(f"[CLICK] page cap reached pages={pages_processed}")
            return session.complete(self.tab_id)
        if handle.url and handle.url == page.url:
            self.logger.warning(f"[CLICK] next control points at the current page; stopping url={page.url}")
            return session.complete(self.tab_id)

        # Flush before navigating; the next page load starts from the store.
        session.record_navigation(handle.url)
        session.check_cancelled()
        await self._navigate(page, handle)
        return None

    async def _navigate(self, page, handle: NextPageHandle):
        before = page.url
        clicked = False
        if handle.selector:
            try:
                async with page.expect_navigation(wait_until="domcontentloaded"):
                    await page.locator(handle.selector).first.click()
                clicked = True
            except PlaywrightError as e:
                if page.is_closed():
                    raise
                self.logger.warning(f"[CLICK] click failed selector={handle.selector} err={e}")
        if (not clicked or page.url == before) and handle.url:
            self.logger.debug(f"[CLICK] falling back to direct navigation url={handle.url}")
            await page.goto(handle.url, wait_until="domcontentloaded")
        self.logger.info(f"[CLICK] navigated {before} -> {page.url}")

    def _on_tab_closed(self):
        if self.store is None:
            return
        if self._new_session().on_tab_closed(self.tab_id):
            self.logger.info(f"[SESSION] tab={self.tab_id} closed; session cancelled")

    # -------------- Page rendering helpers ----------------

    async def _rendered_html(self, page, response: scrapy.http.Response) -> str:
        if page is None:
            return response.text
        return await self._scroll_and_read(page)

    async def _scroll_and_read(self, page) -> str:
        if self.scroll:
            await self._auto_scroll(page, max_rounds=MAX_SCROLL_ROUNDS, idle_ms=self.scroll_idle_ms)
        return await page.content()

    async def _auto_scroll(self, page, max_rounds: int = MAX_SCROLL_ROUNDS, idle_ms: int = 800):
        """
        (Playwright) Scroll to the bottom repeatedly until lazily rendered orders stop appearing.

        - Stops once the scroll height is unchanged for 3 consecutive rounds, or after max_rounds.
        - Reports how many order cards are rendered so far.
        - Scrolls back to the top and waits briefly for final renders.
        - Best-effort: a scripting failure is logged and the page is parsed as is.
        """
        count_js = "(sel) => document.querySelectorAll(sel).length"
        card_selector = ", ".join(ORDER_CARD_SELECTORS)
        try:
            last_height = -1
            stable_rounds = 0
            for round_no in range(1, max_rounds + 1):
                height = await page.evaluate("() => document.documentElement.scrollHeight")
                await page.evaluate("(y) => window.scrollTo(0, y)", height)
                found = await page.evaluate(count_js, card_selector)
                self.logger.debug(f"[SCROLL] round={round_no} height={height} orders_rendered={found}")
                if height == last_height:
                    stable_rounds += 1
                    if stable_rounds >= 3:
                        break
                else:
                    stable_rounds = 0
                last_height = height
                await page.wait_for_timeout(idle_ms)
            await page.evaluate("() => window.scrollTo(0, 0)")
            await page.wait_for_timeout(500)
        except PlaywrightError as e:
            if page.is_closed():
                raise
            self.logger.warning(f"[SCROLL] aborted err={e}")

    # -------------- Logging / meta helpers ----------------

    def _log_event(self, event: str, **fields):
        """Emit a structured JSON log line for downstream analysis."""
        payload = {
            "ts": int(time.time()),
            "event": event,
            "spider": self.name,
            **fields,
        }
        self.logger.info(json.dumps(payload, sort_keys=True, default=str))

    def _playwright_meta(self, include_page: bool = False, base_meta: Optional[dict] = None) -> dict:
        m = {
            "playwright": True,
            "playwright_context": "default",
            "playwright_page_goto_kwargs": {"wait_until": "domcontentloaded"},
        }
        if include_page:
            m["playwright_include_page"] = True
        if base_meta:
            m.update(base_meta)
        return m
