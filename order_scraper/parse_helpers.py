from __future__ import annotations

import re
from datetime import date, datetime
from typing import Callable, List, Optional, Sequence

from bs4 import BeautifulSoup, Tag

from order_scraper.models import Item, Order

# Shorter "names" are stray UI text (icons, badges), not products.
MIN_PRODUCT_NAME_LENGTH = 5

# Priority order: test hooks first, legacy class names last. First selector with hits wins.
ORDER_CARD_SELECTORS = [
    "[data-testid='order-card']",
    ".order-card",
    ".a-box-group.order",
    ".order",
]
ITEM_BOX_SELECTORS = [
    "[data-testid='item-box']",
    ".yohtmlc-item",
    ".a-fixed-left-grid.item-box",
]
ORDER_INFO_SELECTORS = ".order-info, .yohtmlc-order-info, [data-testid='order-info']"
SECONDARY_TEXT_SELECTORS = ".a-color-secondary, .value"
PRODUCT_LINK_SELECTORS = "a[href*='/dp/'], a[href*='/gp/product/']"
FALLBACK_TITLE_SELECTORS = ".yohtmlc-product-title, a.a-link-normal[title]"

_MONTHS = (
    r"(?:January|February|March|April|May|June|July|August|September|October|November|December"
    r"|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sept|Sep|Oct|Nov|Dec)"
)
DATE_RE = re.compile(rf"\b{_MONTHS}\s+\d{{1,2}},\s+\d{{4}}\b", re.I)
FULL_DATE_RE = re.compile(rf"^{_MONTHS}\s+\d{{1,2}},\s+\d{{4}}$", re.I)
ORDER_ID_RE = re.compile(r"\b(\d{3}-\d{7}-\d{7})\b")
ORDER_ID_PARAM_RE = re.compile(r"orderID=([A-Z0-9-]+)", re.I)
TOTAL_RE = re.compile(r"(?:Order Total|Total)[:\s]*(\$[\d,]+\.\d{2})", re.I)
QTY_RE = re.compile(r"Qty:\s*(\d+)", re.I)
ASIN_RE = re.compile(r"/dp/([A-Z0-9]{10})|/gp/product/([A-Z0-9]{10})", re.I)
# Button labels that sit inside item boxes and look like product links.
ACTION_PREFIX_RE = re.compile(r"^(Buy|View|Return|Write|Track|Archive|Problem)", re.I)
SIGNIN_TITLE_RE = re.compile(r"sign[\s-]?in", re.I)

DATE_FORMATS = ("%B %d, %Y", "%b %d, %Y")

Matcher = Callable[[Tag], Optional[str]]


def clean_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def first_match(node: Tag, matchers: Sequence[Matcher]) -> str:
    """Run matchers in priority order and return the first non-empty result ('' if none)."""
    for matcher in matchers:
        value = matcher(node)
        if value:
            return value
    return ""


# -------------- Matcher factories ----------------

def _select_text(*selectors: str) -> Matcher:
    def match(node: Tag) -> Optional[str]:
        for sel in selectors:
            el = node.select_one(sel)
            if el:
                txt = clean_text(el.get_text(" ", strip=True))
                if txt:
                    return txt
        return None
    return match


def _select_title(*selectors: str) -> Matcher:
    def match(node: Tag) -> Optional[str]:
        for sel in selectors:
            el = node.select_one(sel)
            if el:
                txt = _title_or_text(el)
                if txt:
                    return txt
        return None
    return match


def _text_regex(pattern: re.Pattern, group: int = 0) -> Matcher:
    def match(node: Tag) -> Optional[str]:
        m = pattern.search(clean_text(node.get_text(" ")))
        return clean_text(m.group(group)) if m else None
    return match


def _secondary_date(node: Tag) -> Optional[str]:
    for section in node.select(ORDER_INFO_SELECTORS):
        for span in section.select(SECONDARY_TEXT_SELECTORS):
            txt = clean_text(span.get_text(" ", strip=True))
            if FULL_DATE_RE.match(txt):
                return txt
    return None


def _order_id_from_link(node: Tag) -> Optional[str]:
    for a in node.find_all("a", href=True):
        m = ORDER_ID_PARAM_RE.search(a["href"])
        if m:
            return m.group(1)
    return None


ORDER_DATE_MATCHERS: List[Matcher] = [
    _secondary_date,
    _text_regex(DATE_RE),
]
ORDER_ID_MATCHERS: List[Matcher] = [
    _select_text(".yohtmlc-order-id .value", "[data-testid='order-id'] .value", "bdi"),
    _order_id_from_link,
    _text_regex(ORDER_ID_RE, 1),
]
ORDER_TOTAL_MATCHERS: List[Matcher] = [
    _select_text(".yohtmlc-order-total .value", "[data-testid='order-total'] .value"),
    _text_regex(TOTAL_RE, 1),
]
ITEM_NAME_MATCHERS: List[Matcher] = [
    _select_title(".yohtmlc-product-title", "a[href*='/dp/'][title]", "a[href*='/gp/product/'][title]"),
    _select_title("a[href*='/dp/']", "a[href*='/gp/product/']"),
]
ITEM_QTY_MATCHERS: List[Matcher] = [_text_regex(QTY_RE, 1)]
ITEM_PRICE_MATCHERS: List[Matcher] = [
    _select_text(".a-color-price", ".yohtmlc-item-price", ".a-price .a-offscreen"),
]


# -------------- Extraction ----------------

def parse_orders(html: str) -> List[Order]:
    """Parse an order-history document into orders, in document order.

    Never raises on odd markup: missing structure yields fewer orders or empty
    fields. Orders without an id or without items are dropped, as are repeated ids.
    """
    soup = BeautifulSoup(html or "", "lxml")
    orders: List[Order] = []
    seen_ids = set()
    for card in find_order_cards(soup):
        order = extract_order(card)
        if not order.order_id or not order.items:
            continue
        if order.order_id in seen_ids:
            continue
        seen_ids.add(order.order_id)
        orders.append(order)
    return orders


def find_order_cards(soup: Tag) -> List[Tag]:
    for sel in ORDER_CARD_SELECTORS:
        cards = soup.select(sel)
        if cards:
            return cards
    return []


def extract_order(card: Tag) -> Order:
    order = Order(
        order_id=first_match(card, ORDER_ID_MATCHERS),
        order_date=first_match(card, ORDER_DATE_MATCHERS),
        order_total=first_match(card, ORDER_TOTAL_MATCHERS),
    )
    seen = set()
    for box in _item_boxes(card):
        item = _extract_item(box, order)
        if item and item.key not in seen:
            seen.add(item.key)
            order.items.append(item)

    if not order.items:
        # Compact layouts have no item boxes, only title links under the card.
        for link in card.select(FALLBACK_TITLE_SELECTORS):
            name = _title_or_text(link)
            if not _is_product_name(name):
                continue
            item = Item(
                product_name=name,
                asin=_asin_from_href(_link_href(link)),
                order_date=order.order_date,
                order_id=order.order_id,
                order_total=order.order_total,
            )
            if item.key not in seen:
                seen.add(item.key)
                order.items.append(item)
    return order


def _item_boxes(card: Tag) -> List[Tag]:
    for sel in ITEM_BOX_SELECTORS:
        boxes = card.select(sel)
        if boxes:
            return boxes
    return []


def _extract_item(box: Tag, order: Order) -> Optional[Item]:
    name = first_match(box, ITEM_NAME_MATCHERS)
    if not _is_product_name(name):
        return None
    link = box.select_one(PRODUCT_LINK_SELECTORS)
    return Item(
        product_name=name,
        quantity=first_match(box, ITEM_QTY_MATCHERS) or "1",
        price=first_match(box, ITEM_PRICE_MATCHERS),
        asin=_asin_from_href(link.get("href")) if link else "",
        order_date=order.order_date,
        order_id=order.order_id,
        order_total=order.order_total,
    )


def _is_product_name(name: str) -> bool:
    if not name or len(name) < MIN_PRODUCT_NAME_LENGTH:
        return False
    return not ACTION_PREFIX_RE.match(name)


def _title_or_text(el: Tag) -> str:
    return clean_text(el.get("title") or el.get_text(" ", strip=True))


def _link_href(el: Tag) -> str:
    if el.name == "a":
        return el.get("href") or ""
    inner = el.find("a", href=True)
    return inner["href"] if inner else ""


def _asin_from_href(href: Optional[str]) -> str:
    if not href:
        return ""
    m = ASIN_RE.search(href)
    if not m:
        return ""
    return (m.group(1) or m.group(2)).upper()


# -------------- Page classification / dates ----------------

def looks_like_signin(html: str) -> bool:
    """True when a sign-in form was served instead of the order listing."""
    if not html:
        return False
    soup = BeautifulSoup(html, "lxml")
    title = clean_text(soup.title.get_text()) if soup.title else ""
    if title and SIGNIN_TITLE_RE.search(title):
        return True
    return soup.select_one("form[name='signIn'], #ap_email, #ap_password") is not None


def parse_order_date(s: Optional[str]) -> Optional[date]:
    """Parse 'March 1, 2024' / 'Mar 1, 2024'; None when no such date is present."""
    m = DATE_RE.search(clean_text(s))
    if not m:
        return None
    txt = re.sub(r"^sept\b", "Sep", m.group(0), flags=re.I)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(txt, fmt).date()
        except ValueError:
            continue
    return None
