"""Collector session: the only state that survives page reloads.

The click-through strategy rebuilds everything on every page load, so a page
handler creates a fresh ``CollectorSession`` over the shared store, calls
``resume()`` and then ``contribute_page()``. Nothing is kept in memory between
pages; every mutation is committed before the host navigates.

Persisted fields (see ``STATE_KEYS``):

    export_active           bool, a session is collecting
    export_tab_id           owning tab/page handle
    export_strategy         "offset" or "click"
    export_orders           accumulated orders (dicts), merge order
    export_order_ids        seen order ids, merge order
    export_pages_processed  pages contributed so far
    export_start_time       epoch seconds
    export_next_url         where the next page load should land
    export_failures         per-page failure records
    export_auth_required    an auth failure was observed
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from order_scraper.db import StateStore
from order_scraper.errors import CollectionCancelled
from order_scraper.finalize import OUTCOME_NO_ORDERS, CollectionResult, finalize
from order_scraper.models import Order, PaginationInfo
from order_scraper.pagination import ORDERS_PER_PAGE, STRATEGIES, STRATEGY_OFFSET

logger = logging.getLogger(__name__)

STATE_KEYS = [
    "export_active",
    "export_tab_id",
    "export_strategy",
    "export_orders",
    "export_order_ids",
    "export_pages_processed",
    "export_start_time",
    "export_next_url",
    "export_failures",
    "export_auth_required",
]

ProgressSink = Callable[[Dict[str, Any]], None]


class SessionState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    COMPLETING = "completing"
    CANCELLED = "cancelled"


def log_progress(update: Dict[str, Any]):
    total = update.get("total_pages") or "?"
    logger.info(
        f"[PROGRESS] page={update.get('current_page')}/{total} orders={update.get('orders_collected')} {update.get('message', '')}".rstrip()
    )


class CollectorSession:
    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], float] = time.time,
        progress: Optional[ProgressSink] = log_progress,
        orders_per_page: int = ORDERS_PER_PAGE,
    ):
        self.store = store
        self.clock = clock
        self.progress = progress
        self.orders_per_page = orders_per_page
        self.state = SessionState.IDLE
        self.tab_id: Optional[str] = None
        self.strategy: Optional[str] = None
        self._cancelled = False

    # -------------- Lifecycle ----------------
    def start(self, tab_id: Optional[str] = None, strategy: str = STRATEGY_OFFSET, next_url: Optional[str] = None):
        """Begin a new session, discarding anything left from an earlier one."""
        if strategy not in STRATEGIES:
            raise ValueError(f"unknown strategy {strategy!r}")
        self._cancelled = False
        self.tab_id = tab_id
        self.strategy = strategy
        self.store.set({
            "export_active": True,
            "export_tab_id": tab_id,
            "export_strategy": strategy,
            "export_orders": [],
            "export_order_ids": [],
            "export_pages_processed": 0,
            "export_start_time": self.clock(),
            "export_next_url": next_url,
            "export_failures": [],
            "export_auth_required": False,
        })
        self.state = SessionState.COLLECTING
        logger.info(f"[SESSION] started strategy={strategy} tab={tab_id}")

    def resume(self) -> bool:
        """Re-read persisted state; True when a session is collecting."""
        data = self.store.get(["export_active", "export_tab_id", "export_strategy"])
        if not data["export_active"]:
            self.state = SessionState.IDLE
            return False
        self.tab_id = data["export_tab_id"]
        self.strategy = data["export_strategy"]
        self.state = SessionState.COLLECTING
        return True

    def contribute_page(self, orders: List[Order], page_info: Optional[PaginationInfo] = None) -> int:
        """Merge one page of orders into the accumulator; returns how many were new.

        Safe to call from any process instance sharing the store: known ids are
        dropped, so contributing the same page twice adds nothing but the page count.
        """
        self.check_cancelled()
        data = self.store.get(["export_active", "export_orders", "export_order_ids", "export_pages_processed"])
        if not data["export_active"]:
            self._cancelled = True
            raise CollectionCancelled("session is not active")
        accumulated = data["export_orders"] or []
        ids = list(data["export_order_ids"] or [])
        known = set(ids)
        added = []
        for order in orders:
            if not order.order_id or not order.items or order.order_id in known:
                continue
            known.add(order.order_id)
            ids.append(order.order_id)
            added.append(order.to_dict())
        pages = (data["export_pages_processed"] or 0) + 1
        self.store.set({
            "export_orders": accumulated + added,
            "export_order_ids": ids,
            "export_pages_processed": pages,
        })
        page_no = page_info.current_page_number if page_info else pages
        logger.info(
            f"[SESSION] page={page_no} added={len(added)} dropped_dupes={len(orders) - len(added)} total={len(ids)} pages_processed={pages}"
        )
        if self.progress:
            self.progress({
                "current_page": page_no,
                "total_pages": page_info.total_pages(self.orders_per_page) if page_info else None,
                "message": "collecting",
                "orders_collected": len(ids),
            })
        return len(added)

    def is_last_page(self, page_info: PaginationInfo) -> bool:
        return not page_info.has_next_page

    def record_navigation(self, next_url: Optional[str]):
        """Persist where the next page load lands; call before navigating."""
        self.check_cancelled()
        self.store.set({"export_next_url": next_url})

    def record_failure(self, failure: Dict[str, Any]):
        self.check_cancelled()
        failures = self.store.get(["export_failures"])["export_failures"] or []
        failures.append(failure)
        self.store.set({"export_failures": failures})

    def mark_auth_required(self, reason: str = ""):
        self.check_cancelled()
        self.store.set({"export_auth_required": True})
        logger.error(f"[SESSION] authentication required {reason}".rstrip())

    def complete(
        self,
        tab_id: Optional[str] = None,
        consumer: Optional[Callable[[CollectionResult], Any]] = None,
    ) -> CollectionResult:
        """Finalize the accumulator, hand it to ``consumer`` and clear persisted state."""
        self.check_cancelled()
        if self.state is not SessionState.COLLECTING and not self.resume():
            raise CollectionCancelled("no active session to complete")
        self.state = SessionState.COMPLETING
        data = self.store.get(STATE_KEYS)
        if tab_id and data["export_tab_id"] and tab_id != data["export_tab_id"]:
            logger.warning(f"[SESSION] completing from tab={tab_id} but session is owned by tab={data['export_tab_id']}")
        orders = [Order.from_dict(o) for o in (data["export_orders"] or [])]
        started = data["export_start_time"]
        duration = self.clock() - started if started else None
        result = finalize(
            orders,
            pages_processed=data["export_pages_processed"] or 0,
            duration_seconds=duration,
            failures=data["export_failures"] or [],
            auth_required=bool(data["export_auth_required"]),
        )
        try:
            if consumer:
                consumer(result)
        finally:
            self.store.clear(STATE_KEYS)
            self.state = SessionState.IDLE
        if result.outcome == OUTCOME_NO_ORDERS:
            logger.warning(f"[SESSION] no orders found pages_processed={result.stats['pages_processed']}")
        else:
            logger.info(f"[SESSION] complete {result.stats}")
        if result.failures:
            logger.warning(f"[SESSION] {len(result.failures)} page(s) failed: {result.failures}")
        return result

    def cancel(self, reason: str = "user"):
        self._cancelled = True
        self.state = SessionState.CANCELLED
        self.store.clear(STATE_KEYS)
        self.state = SessionState.IDLE
        logger.info(f"[SESSION] cancelled reason={reason}")

    def on_tab_closed(self, tab_id: Optional[str]) -> bool:
        """Cancel if ``tab_id`` owns the active session. Returns True when cancelled."""
        data = self.store.get(["export_active", "export_tab_id"])
        if data["export_active"] and data["export_tab_id"] == tab_id:
            self.cancel(reason="tab_closed")
            return True
        return False

    # -------------- Cancellation checks ----------------
    def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self.state is not SessionState.COLLECTING:
            return False
        # Another process (session_ctl, a closed tab) may have cleared the store.
        if not self.store.get(["export_active"])["export_active"]:
            self._cancelled = True
            return True
        return False

    def check_cancelled(self):
        if self.is_cancelled():
            raise CollectionCancelled("session cancelled")

    # -------------- Read-only views ----------------
    def status(self) -> Dict[str, Any]:
        data = self.store.get(STATE_KEYS)
        started = data["export_start_time"]
        return {
            "is_active": bool(data["export_active"]),
            "strategy": data["export_strategy"],
            "tab_id": data["export_tab_id"],
            "order_count": len(data["export_order_ids"] or []),
            "pages_processed": data["export_pages_processed"] or 0,
            "next_url": data["export_next_url"],
            "elapsed_seconds": round(self.clock() - started, 1) if started else None,
            "failures": len(data["export_failures"] or []),
            "auth_required": bool(data["export_auth_required"]),
        }

    def orders(self) -> List[Order]:
        raw = self.store.get(["export_orders"])["export_orders"] or []
        return [Order.from_dict(o) for o in raw]

    def next_url(self) -> Optional[str]:
        return self.store.get(["export_next_url"])["export_next_url"]
