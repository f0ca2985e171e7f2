from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Item:
    product_name: str
    quantity: str = "1"
    price: str = ""
    asin: str = ""
    # Denormalised parent fields; output rows are item-grained.
    order_date: str = ""
    order_id: str = ""
    order_total: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.product_name, self.asin)


@dataclass
class Order:
    order_id: str
    order_date: str = ""
    order_total: str = ""
    items: List[Item] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        items = [Item(**it) for it in (data.get("items") or [])]
        return cls(
            order_id=data.get("order_id") or "",
            order_date=data.get("order_date") or "",
            order_total=data.get("order_total") or "",
            items=items,
        )


@dataclass
class NextPageHandle:
    """How to reach the following page.

    ``url`` is set for offset links, ``selector`` when the host has to click a
    control in the live page. Either may be missing.
    """

    url: Optional[str] = None
    selector: Optional[str] = None


@dataclass
class PaginationInfo:
    current_page_number: int = 1
    has_next_page: bool = False
    next_page_handle: Optional[NextPageHandle] = None
    total_order_count: Optional[int] = None
    # Offset of the page this info was derived from (offset strategy only).
    current_offset: Optional[int] = None

    def total_pages(self, orders_per_page: int) -> Optional[int]:
        if self.total_order_count is None or orders_per_page <= 0:
            return None
        return max(1, -(-self.total_order_count // orders_per_page))
