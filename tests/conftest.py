import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from order_scraper.db import StateStore  # noqa: E402


def item_html(name, asin="B000000001", price="$9.99", qty=None, extra=""):
    qty_html = f'<span class="item-view-qty">Qty: {qty}</span>' if qty else ""
    price_html = f'<span class="a-color-price">{price}</span>' if price else ""
    return f"""
    <div class="yohtmlc-item">
      <div class="yohtmlc-product-title"><a class="a-link-normal" href="/dp/{asin}?ref=ppx">{name}</a></div>
      {qty_html}
      {price_html}
      {extra}
    </div>
    """


def order_html(order_id, date="March 3, 2024", total="$25.98", items=None, body=None):
    if body is None:
        body = "".join(items if items is not None else [item_html(f"Product for {order_id}")])
    return f"""
    <div class="order-card">
      <div class="order-info">
        <span class="a-color-secondary">Order placed</span>
        <span class="a-color-secondary">{date}</span>
        <div class="yohtmlc-order-total"><span class="value">{total}</span></div>
        <div class="yohtmlc-order-id"><span class="value">{order_id}</span></div>
      </div>
      {body}
    </div>
    """


def pagination_html(next_href=None, disabled=False, selected=1):
    if disabled:
        last = '<li class="a-disabled a-last">Next</li>'
    elif next_href:
        last = f'<li class="a-last"><a href="{next_href}">Next<span class="a-letter-space"></span></a></li>'
    else:
        last = ""
    return f"""
    <ul class="a-pagination">
      <li class="a-selected"><a href="#">{selected}</a></li>
      {last}
    </ul>
    """


def listing_html(orders, total=None, pagination=""):
    count = f'<span class="num-orders">{total} orders</span>' if total is not None else ""
    return f"""
    <html><head><title>Your Orders</title></head>
    <body>
      <div id="controlsContainer">{count} placed in the past 3 months</div>
      {"".join(orders)}
      {pagination}
    </body></html>
    """


SIGNIN_HTML = """
<html><head><title>Amazon Sign-In</title></head>
<body><form name="signIn"><input id="ap_email" name="email"></form></body></html>
"""


def order_id(n):
    return f"111-{n:07d}-{n:07d}"


@pytest.fixture
def store(tmp_path):
    s = StateStore(tmp_path / "state.db")
    s.init_db()
    return s
