"""
Owner dashboard figures, computed on demand from the revenue ledger and the
catalog, plus the one-off backfill that turns served orders from before the
ledger existed into revenue records.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from database import CatalogStore, OrderStore, RevenueLedger, utcnow
from orders import order_settlement_id
from schemas import OrderStatus, Revenue

logger = logging.getLogger(__name__)

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
TOP_SELLING_LIMIT = 5


def _year_start(year: int) -> datetime:
    return datetime(year, 1, 1)


def _day_bounds(moment: datetime):
    start = datetime(moment.year, moment.month, moment.day)
    return start, start + timedelta(days=1)


class AnalyticsService:
    def __init__(self, ledger: RevenueLedger, catalog: CatalogStore, orders: Optional[OrderStore] = None):
        self.ledger = ledger
        self.catalog = catalog
        self.orders = orders

    def period_revenue(self, start: datetime, end: Optional[datetime] = None) -> Dict[str, Any]:
        summary = self.ledger.sum_in_range(start, end)
        return {"totalRevenue": summary["total"], "totalEntries": summary["count"]}

    def top_selling_items(self) -> List[dict]:
        return self.catalog.top_by_sold(TOP_SELLING_LIMIT)

    def monthly_trend(self, year: int) -> List[Dict[str, Any]]:
        totals = self.ledger.monthly_totals(_year_start(year), _year_start(year + 1))
        return [
            {"name": name, "revenue": totals.get(month, 0)}
            for month, name in enumerate(MONTH_NAMES, start=1)
        ]

    def dashboard_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        month_start = datetime(now.year, now.month, 1)
        year_start = _year_start(now.year)
        last_year_start = _year_start(now.year - 1)

        month = self.period_revenue(month_start)
        year = self.period_revenue(year_start)
        last_year = self.period_revenue(last_year_start, year_start)

        return {
            "currentMonthRevenue": month["totalRevenue"],
            "currentMonthOrders": month["totalEntries"],
            "currentYearRevenue": year["totalRevenue"],
            "currentYearOrders": year["totalEntries"],
            "lastYearRevenue": last_year["totalRevenue"],
            "lastYearOrders": last_year["totalEntries"],
            "topSellingItems": self.top_selling_items(),
            "salesTrend": self.monthly_trend(now.year),
        }

    def migrate_served_orders(self) -> Dict[str, int]:
        """Backfill revenue for served orders that never reached the ledger.

        An order counts as recorded when a record carries its settlement id
        or, for records written before ids existed, when one matches guest,
        table, amount and calendar day. Safe to re-run.
        """
        if self.orders is None:
            raise RuntimeError("migration needs an order store")
        scanned = created = 0
        for order in self.orders.find_by_status(OrderStatus.SERVED.value):
            scanned += 1
            settlement_id = order_settlement_id(order["_id"])
            if self.ledger.get_by_settlement(settlement_id):
                continue
            day_start, day_end = _day_bounds(order["createdAt"])
            if self.ledger.find_matching(order["guestId"], order.get("tableId") or "unknown", order["totalPrice"], day_start, day_end):
                continue
            # Claimed orders settle later against this same record
            if self.orders.claim_for_settlement(order["_id"], settlement_id) is None:
                continue
            record = Revenue(
                guest_id=order["guestId"],
                table_id=order.get("tableId") or "unknown",
                total_amount=order["totalPrice"],
                date=order["createdAt"],
                order_ids=[order["_id"]],
            )
            if self.ledger.record_settlement(settlement_id, record):
                created += 1
        logger.info("Revenue migration: %d served orders scanned, %d records created", scanned, created)
        return {"scanned": scanned, "created": created}
