"""Rate-limited, retrying page fetches for the URL-offset strategy.

``FetchQueue`` runs at most ``concurrency`` tasks at once and spaces task starts
by ``delay`` seconds. ``PageFetcher`` wraps one listing page fetch: exponential
backoff on 429/503, immediate stop on 401/403, sign-in page detection.
All of it runs on one event loop, so results need no locking.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from order_scraper.errors import AuthRequired, CollectionCancelled, CollectorError, PageFetchFailure
from order_scraper.models import Order
from order_scraper.parse_helpers import looks_like_signin, parse_orders

logger = logging.getLogger(__name__)

RETRY_STATUSES = {429, 503}
AUTH_STATUSES = {401, 403}

PAGE_OK = "ok"
PAGE_SIGNIN = "signin"
PAGE_FAILED = "failed"
PAGE_AUTH = "auth"
PAGE_SKIPPED = "skipped"


@dataclass
class FetchResponse:
    status: int
    text: str
    url: str = ""


Fetcher = Callable[[str], Awaitable[FetchResponse]]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass
class PageResult:
    url: str
    offset: int
    page_number: int
    status: str
    orders: List[Order] = field(default_factory=list)
    attempts: int = 0
    http_status: Optional[int] = None
    error: str = ""

    @property
    def is_failure(self) -> bool:
        return self.status in (PAGE_FAILED, PAGE_AUTH, PAGE_SKIPPED)

    def to_error(self) -> Optional[CollectorError]:
        """The error this outcome stands for; None for a usable page."""
        if self.status in (PAGE_AUTH, PAGE_SIGNIN):
            return AuthRequired(self.url, self.http_status)
        if self.status in (PAGE_FAILED, PAGE_SKIPPED):
            return PageFetchFailure(self.url, self.http_status, self.attempts, self.error)
        return None

    def failure_record(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "page_number": self.page_number,
            "status": self.status,
            "http_status": self.http_status,
            "attempts": self.attempts,
            "error": self.error,
            "message": str(self.to_error() or ""),
        }


def _never_cancelled() -> bool:
    return False


class FetchQueue:
    def __init__(
        self,
        concurrency: int = 2,
        delay: float = 1.0,
        is_cancelled: Callable[[], bool] = _never_cancelled,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.concurrency = concurrency if concurrency > 0 else 1
        self.delay = max(0.0, float(delay))
        self._is_cancelled = is_cancelled
        self._sleep = sleep
        self._slots = asyncio.Semaphore(self.concurrency)
        self._pace_lock = asyncio.Lock()
        self._pending: List[asyncio.Future] = []
        self.started = 0

    def enqueue(self, task: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """Schedule ``task`` and return a future for its result."""
        fut = asyncio.ensure_future(self._run(task))
        self._pending.append(fut)
        return fut

    async def _run(self, task: Callable[[], Awaitable[Any]]) -> Any:
        async with self._slots:
            # Starts are serialised so consecutive requests are at least `delay` apart.
            async with self._pace_lock:
                if self._is_cancelled():
                    raise CollectionCancelled("queue cancelled before task start")
                if self.delay:
                    await self._sleep(self.delay)
                if self._is_cancelled():
                    raise CollectionCancelled("queue cancelled before task start")
                self.started += 1
            return await task()

    async def join(self) -> List[Any]:
        """Wait for every queued task; exceptions are returned in place of results."""
        if not self._pending:
            return []
        return await asyncio.gather(*self._pending, return_exceptions=True)


class PageFetcher:
    def __init__(
        self,
        fetch: Fetcher,
        max_attempts: int = 4,
        backoff_base: float = 2.0,
        is_cancelled: Callable[[], bool] = _never_cancelled,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._fetch = fetch
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self._is_cancelled = is_cancelled
        self._sleep = sleep
        self.auth_failed = False

    def _check_cancelled(self, url: str):
        if self._is_cancelled():
            raise CollectionCancelled(f"cancelled while fetching {url}")

    async def fetch_page(self, url: str, offset: int = 0, page_number: int = 1) -> PageResult:
        result = PageResult(url=url, offset=offset, page_number=page_number, status=PAGE_FAILED)
        if self.auth_failed:
            # Collection is already known to be incomplete; do not keep hitting the site.
            result.status = PAGE_SKIPPED
            result.error = "skipped after authentication failure"
            logger.warning(f"[FETCH-SKIP] page={page_number} url={url} reason=auth_required")
            return result

        attempt = 0
        while True:
            attempt += 1
            result.attempts = attempt
            self._check_cancelled(url)
            status: Optional[int] = None
            text = ""
            try:
                resp = await self._fetch(url)
                status, text = resp.status, resp.text or ""
            except CollectionCancelled:
                raise
            except Exception as e:
                result.error = f"{type(e).__name__}: {e}"
                logger.warning(f"[FETCH-ERROR] page={page_number} attempt={attempt} url={url} err={result.error}")
            # A late response after cancellation is dropped.
            self._check_cancelled(url)
            result.http_status = status

            if status is not None and 200 <= status < 300:
                result.error = ""
                if looks_like_signin(text):
                    result.status = PAGE_SIGNIN
                    logger.warning(f"[AUTH-SILENT] page={page_number} url={url} sign-in page served instead of orders")
                    return result
                result.orders = parse_orders(text)
                result.status = PAGE_OK
                if not result.orders:
                    logger.info(f"[PAGE-EMPTY] page={page_number} url={url}")
                else:
                    logger.debug(f"[FETCH] page={page_number} orders={len(result.orders)} attempts={attempt} url={url}")
                return result

            if status in AUTH_STATUSES:
                self.auth_failed = True
                result.status = PAGE_AUTH
                result.error = f"HTTP {status}"
                logger.error(f"[AUTH] page={page_number} status={status} url={url} - sign in again; collection will be partial")
                return result

            if status is not None and status not in RETRY_STATUSES:
                result.error = f"HTTP {status}"
                logger.warning(f"[FETCH-FAIL] page={page_number} status={status} url={url}")
                return result

            if attempt >= self.max_attempts:
                result.error = result.error or f"HTTP {status}"
                result.error = f"{result.error} after {attempt} attempts"
                logger.warning(f"[FETCH-FAIL] page={page_number} retries exhausted attempts={attempt} url={url}")
                return result

            delay = self.backoff_base ** attempt
            if status is not None:
                logger.warning(f"[{status}] page={page_number} attempt={attempt} retry_in={delay:.1f}s url={url}")
            self._check_cancelled(url)
            await self._sleep(delay)
