import csv
import io

from order_scraper.finalize import (
    CSV_HEADERS,
    OUTCOME_COMPLETED,
    OUTCOME_NO_ORDERS,
    finalize,
    flatten_rows,
    merge_orders,
    orders_from_rows,
    sort_orders,
    to_csv,
)
from order_scraper.models import Item, Order


def _order(oid, date="", items=("Sample Product",), total="$1.00"):
    order = Order(order_id=oid, order_date=date, order_total=total)
    order.items = [Item(product_name=name, order_id=oid, order_date=date, order_total=total) for name in items]
    return order


def test_merge_keeps_first_copy_of_each_order():
    a, b, c = _order("A"), _order("B", total="$2.00"), _order("C")
    b_again = _order("B", total="$99.00")

    merged = merge_orders([a, b], [b_again, c])

    assert [o.order_id for o in merged] == ["A", "B", "C"]
    assert merged[1].order_total == "$2.00"


def test_sort_newest_first_with_unparseable_dates_in_place():
    orders = [
        _order("old", "January 2, 2023"),
        _order("odd", "Digital order"),
        _order("new", "March 5, 2024"),
        _order("mid", "Oct 1, 2023"),
    ]

    assert [o.order_id for o in sort_orders(orders)] == ["new", "odd", "mid", "old"]


def test_sort_is_stable_for_equal_dates():
    orders = [_order("x", "May 1, 2024"), _order("y", "May 1, 2024"), _order("z", "May 2, 2024")]

    assert [o.order_id for o in sort_orders(orders)] == ["z", "x", "y"]


def test_flatten_rows_one_row_per_item():
    rows = flatten_rows([_order("A", "May 1, 2024", items=("First Thing", "Second Thing"))])

    assert [r["product_name"] for r in rows] == ["First Thing", "Second Thing"]
    assert all(r["order_id"] == "A" and r["order_date"] == "May 1, 2024" for r in rows)


def test_csv_escapes_commas_and_quotes():
    name = 'Cable, 6ft "braided"'
    rows = flatten_rows([_order("A", "May 1, 2024", items=(name,))])

    text = to_csv(rows)

    assert not text.endswith("\n")
    assert '"Cable, 6ft ""braided"""' in text
    parsed = list(csv.reader(io.StringIO(text)))
    assert parsed[0] == CSV_HEADERS
    assert parsed[1] == ["May 1, 2024", "A", name, "1", "", "", "$1.00"]


def test_csv_header_only_for_no_rows():
    assert to_csv([]) == ",".join(CSV_HEADERS)


def test_orders_from_rows_regroups_items():
    rows = [
        {"order_id": "A", "order_date": "May 1, 2024", "product_name": "First Thing", "quantity": "2"},
        {"order_id": "B", "order_date": "May 2, 2024", "product_name": "Other Thing"},
        {"order_id": "A", "order_date": "May 1, 2024", "product_name": "Second Thing"},
        {"order_id": "A", "order_date": "May 1, 2024", "product_name": "First Thing", "quantity": "2"},
        {"order_id": "", "product_name": "Orphan Item"},
    ]

    orders = orders_from_rows(rows)

    assert [o.order_id for o in orders] == ["A", "B"]
    assert [(i.product_name, i.quantity) for i in orders[0].items] == [("First Thing", "2"), ("Second Thing", "1")]


def test_finalize_stats_and_outcome():
    orders = [_order("A", "May 1, 2024", items=("One Thing", "Two Thing")), _order("B", "May 3, 2024"), _order("A")]
    failures = [{"url": "u", "status": "failed"}]

    result = finalize(orders, pages_processed=3, duration_seconds=1.23456, failures=failures, auth_required=True)

    assert result.outcome == OUTCOME_COMPLETED
    assert [o.order_id for o in result.orders] == ["B", "A"]
    assert result.stats == {
        "total_orders": 2,
        "total_items": 3,
        "pages_processed": 3,
        "duration_seconds": 1.235,
        "failed_pages": 1,
    }
    assert result.auth_required is True


def test_finalize_with_nothing_collected():
    result = finalize([])

    assert result.outcome == OUTCOME_NO_ORDERS
    assert result.rows == []
