"""Pagination discovery for the order-history listing.

Two ways to move through the listing, chosen once per session:

- ``offset``: the total order count is known, so every page URL can be built up
  front by rewriting the start-index query parameter.
- ``click``: the host clicks the "next" control and the page reloads.

Everything here inspects HTML only; nothing fetches or navigates.
"""

from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import parse_qsl, quote, unquote_plus, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

from order_scraper.models import NextPageHandle, PaginationInfo
from order_scraper.parse_helpers import clean_text

STRATEGY_OFFSET = "offset"
STRATEGY_CLICK = "click"
STRATEGIES = (STRATEGY_OFFSET, STRATEGY_CLICK)

ORDERS_PER_PAGE = 10
OFFSET_PARAM = "startIndex"

COUNT_SELECTORS = [".num-orders", "[data-testid='order-count']"]
HEADER_SELECTORS = [
    "[data-testid='yo-order-history-header']",
    "#controlsContainer",
    ".your-orders-content-container",
    ".a-row.a-spacing-base",
]
ORDER_COUNT_RE = re.compile(r"(\d[\d,]*)\s+orders?\b", re.I)

PAGINATION_SELECTOR = ".a-pagination"
NEXT_CONTROL_SELECTOR = ".a-pagination .a-last"
NEXT_LINK_SELECTOR = ".a-pagination .a-last a"
DISABLED_CLASS = "a-disabled"


def extract_total_orders(soup: Tag) -> Optional[int]:
    """Read the '<N> orders placed in ...' count; None when the page does not say."""
    for sel in COUNT_SELECTORS:
        el = soup.select_one(sel)
        if el:
            n = _count_in(el.get_text(" ", strip=True))
            if n is not None:
                return n
    for sel in HEADER_SELECTORS:
        el = soup.select_one(sel)
        if el:
            n = _count_in(el.get_text(" ", strip=True))
            if n is not None:
                return n
    return None


def _count_in(text: str) -> Optional[int]:
    m = ORDER_COUNT_RE.search(clean_text(text))
    if not m:
        return None
    try:
        return int(m.group(1).replace(",", ""))
    except ValueError:
        return None


# -------------- URL-offset strategy ----------------

def compute_offsets(total_orders: Optional[int], orders_per_page: int = ORDERS_PER_PAGE) -> List[int]:
    """Offsets of every page below ``total_orders``; the first page always exists."""
    if not total_orders or orders_per_page <= 0:
        return [0]
    return list(range(0, total_orders, orders_per_page))


def current_offset(url: str, offset_param: str = OFFSET_PARAM) -> int:
    for name, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        if name == offset_param:
            try:
                return max(0, int(value))
            except ValueError:
                return 0
    return 0


def page_url(current_url: str, offset: int, offset_param: str = OFFSET_PARAM) -> str:
    """Return ``current_url`` with only the offset parameter set to ``offset``.

    Other query parameters (filters, referrer tags) are kept exactly as written,
    including their original encoding and order. The offset parameter is appended
    when the URL does not carry one yet.
    """
    parts = urlsplit(current_url)
    pairs = parts.query.split("&") if parts.query else []
    out: List[str] = []
    replaced = False
    for pair in pairs:
        name = unquote_plus(pair.split("=", 1)[0])
        if name == offset_param:
            if not replaced:
                out.append(f"{pair.split('=', 1)[0]}={offset}")
                replaced = True
            continue
        out.append(pair)
    if not replaced:
        out.append(f"{quote(offset_param)}={offset}")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(out), parts.fragment))


def detect_offset(
    html: str,
    current_url: str,
    orders_per_page: int = ORDERS_PER_PAGE,
    offset_param: str = OFFSET_PARAM,
) -> PaginationInfo:
    soup = BeautifulSoup(html or "", "lxml")
    total = extract_total_orders(soup)
    offset = current_offset(current_url, offset_param)
    per_page = orders_per_page if orders_per_page > 0 else ORDERS_PER_PAGE
    if total is not None:
        has_next = offset + per_page < total
    else:
        # Unknown total: trust the next control if there is one.
        has_next = _find_next_control(soup, current_url, offset_param)[0]
    handle = NextPageHandle(url=page_url(current_url, offset + per_page, offset_param)) if has_next else None
    return PaginationInfo(
        current_page_number=offset // per_page + 1,
        has_next_page=has_next,
        next_page_handle=handle,
        total_order_count=total,
        current_offset=offset,
    )


# -------------- Click-through strategy ----------------

def detect_click_through(
    html: str,
    current_url: str,
    orders_per_page: int = ORDERS_PER_PAGE,
    offset_param: str = OFFSET_PARAM,
) -> PaginationInfo:
    soup = BeautifulSoup(html or "", "lxml")
    has_next, handle = _find_next_control(soup, current_url, offset_param)
    return PaginationInfo(
        current_page_number=_current_page_number(soup, current_url, orders_per_page, offset_param),
        has_next_page=has_next,
        next_page_handle=handle,
        total_order_count=extract_total_orders(soup),
        current_offset=current_offset(current_url, offset_param),
    )


def _current_page_number(soup: Tag, current_url: str, orders_per_page: int, offset_param: str) -> int:
    selected = soup.select_one(f"{PAGINATION_SELECTOR} .a-selected")
    if selected:
        txt = clean_text(selected.get_text(" ", strip=True))
        m = re.search(r"\d+", txt)
        if m:
            return int(m.group(0))
    per_page = orders_per_page if orders_per_page > 0 else ORDERS_PER_PAGE
    return current_offset(current_url, offset_param) // per_page + 1


def _find_next_control(soup: Tag, current_url: str, offset_param: str) -> tuple[bool, Optional[NextPageHandle]]:
    nxt = soup.select_one(NEXT_CONTROL_SELECTOR)
    if nxt is not None:
        if DISABLED_CLASS in (nxt.get("class") or []):
            return False, None
        a = nxt if nxt.name == "a" else nxt.find("a", href=True)
        if a is None or not a.get("href"):
            return False, None
        return True, NextPageHandle(url=urljoin(current_url, a["href"]), selector=NEXT_LINK_SELECTOR)

    # Fallback: any offset link labelled "Next" or carrying a next icon.
    for a in soup.find_all("a", href=True):
        href = a["href"]
        if f"{offset_param}=" not in href:
            continue
        if DISABLED_CLASS in (a.get("class") or []):
            continue
        label = clean_text(a.get_text(" ", strip=True)).lower()
        has_icon = a.select_one(".a-icon-next, [class*='icon-next'], [class*='next']") is not None
        if label.startswith("next") or has_icon or "next" in (a.get("class") or []):
            selector = 'a[href="%s"]' % href.replace('"', '\\"')
            return True, NextPageHandle(url=urljoin(current_url, href), selector=selector)
    return False, None


def detect(
    html: str,
    current_url: str,
    strategy: str = STRATEGY_OFFSET,
    orders_per_page: int = ORDERS_PER_PAGE,
    offset_param: str = OFFSET_PARAM,
) -> PaginationInfo:
    if strategy == STRATEGY_OFFSET:
        return detect_offset(html, current_url, orders_per_page, offset_param)
    if strategy == STRATEGY_CLICK:
        return detect_click_through(html, current_url, orders_per_page, offset_param)
    raise ValueError(f"unknown pagination strategy: {strategy!r}")
