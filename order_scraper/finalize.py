"""Merge, sort and flatten collected orders into export rows."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, TextIO

from order_scraper.models import Item, Order
from order_scraper.parse_helpers import parse_order_date

OUTCOME_COMPLETED = "completed"
OUTCOME_NO_ORDERS = "no_orders"

# (CSV header, row key) in output column order.
COLUMNS = [
    ("Order Date", "order_date"),
    ("Order ID", "order_id"),
    ("Product Name", "product_name"),
    ("Quantity", "quantity"),
    ("Item Price", "price"),
    ("ASIN", "asin"),
    ("Order Total", "order_total"),
]
CSV_HEADERS = [h for h, _ in COLUMNS]
ROW_KEYS = [k for _, k in COLUMNS]


@dataclass
class CollectionResult:
    orders: List[Order]
    rows: List[Dict[str, str]]
    stats: Dict[str, Any]
    failures: List[Dict[str, Any]] = field(default_factory=list)
    auth_required: bool = False
    outcome: str = OUTCOME_COMPLETED


def merge_orders(*batches: Iterable[Order]) -> List[Order]:
    """Concatenate batches keeping the first order seen for each order_id."""
    merged: List[Order] = []
    seen = set()
    for batch in batches:
        for order in batch:
            if not order.order_id or order.order_id in seen:
                continue
            seen.add(order.order_id)
            merged.append(order)
    return merged


def sort_orders(orders: List[Order]) -> List[Order]:
    """Newest first. Orders with an unparseable date keep their position."""
    dates = [parse_order_date(o.order_date) for o in orders]
    slots = [i for i, d in enumerate(dates) if d is not None]
    ranked = sorted(slots, key=lambda i: dates[i], reverse=True)
    out = list(orders)
    for slot, src in zip(slots, ranked):
        out[slot] = orders[src]
    return out


def flatten_rows(orders: Iterable[Order]) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    for order in orders:
        for item in order.items:
            rows.append({
                "order_date": item.order_date or order.order_date,
                "order_id": item.order_id or order.order_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "price": item.price,
                "asin": item.asin,
                "order_total": item.order_total or order.order_total,
            })
    return rows


def orders_from_rows(rows: Iterable[Dict[str, Any]]) -> List[Order]:
    """Regroup item rows (export JSONL) into orders, keeping first-seen order."""
    by_id: Dict[str, Order] = {}
    ordered: List[Order] = []
    for row in rows:
        oid = (row.get("order_id") or "").strip()
        name = (row.get("product_name") or "").strip()
        if not oid or not name:
            continue
        order = by_id.get(oid)
        if order is None:
            order = Order(order_id=oid, order_date=row.get("order_date") or "", order_total=row.get("order_total") or "")
            by_id[oid] = order
            ordered.append(order)
        item = Item(
            product_name=name,
            quantity=row.get("quantity") or "1",
            price=row.get("price") or "",
            asin=row.get("asin") or "",
            order_date=order.order_date,
            order_id=oid,
            order_total=order.order_total,
        )
        if all(it.key != item.key for it in order.items):
            order.items.append(item)
    return ordered


def csv_writer(fh: TextIO):
    # QUOTE_MINIMAL: quote only values holding a comma, quote or newline.
    return csv.writer(fh, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)


def row_values(row: Dict[str, Any]) -> List[str]:
    return [str(row.get(k) or "") for k in ROW_KEYS]


def to_csv(rows: Iterable[Dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv_writer(buf)
    writer.writerow(CSV_HEADERS)
    for row in rows:
        writer.writerow(row_values(row))
    text = buf.getvalue()
    return text[:-1] if text.endswith("\n") else text


def finalize(
    orders: List[Order],
    pages_processed: int = 0,
    duration_seconds: Optional[float] = None,
    failures: Optional[List[Dict[str, Any]]] = None,
    auth_required: bool = False,
) -> CollectionResult:
    ordered = sort_orders(merge_orders(orders))
    rows = flatten_rows(ordered)
    stats = {
        "total_orders": len(ordered),
        "total_items": len(rows),
        "pages_processed": pages_processed,
        "duration_seconds": round(duration_seconds, 3) if duration_seconds is not None else None,
        "failed_pages": len(failures or []),
    }
    return CollectionResult(
        orders=ordered,
        rows=rows,
        stats=stats,
        failures=list(failures or []),
        auth_required=auth_required,
        outcome=OUTCOME_COMPLETED if ordered else OUTCOME_NO_ORDERS,
    )
