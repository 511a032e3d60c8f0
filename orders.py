"""
Order lifecycle engine.

Creates orders with catalog-resolved prices, moves them through the status
graph, settles them into the revenue ledger and tells connected clients
about every change.

Status graph::

    Pending -> Preparing -> Ready -> Served
       |           |
       +-----------+--> Cancelled

Forward moves may skip steps. Served and Cancelled are terminal.

Settlement runs as a small saga so that a crash or a retried request never
duplicates revenue: orders are claimed under a settlement id, the revenue
record is upserted by that id, and only then are the orders deleted. Sold
counters are guarded per order by the ``soldCounted`` flag, so an order is
counted once whichever path (serving or guest checkout) gets there first.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from database import CatalogStore, OrderStore, RevenueLedger, with_utc_dates
from errors import Conflict, InvalidArgument, NotFound
from notifications import (
    NEW_ORDER,
    ORDER_DELETED,
    ORDER_STATUS_UPDATE,
    ORDER_UPDATED,
    NotificationFanOut,
)
from schemas import CartItem, Order, OrderItem, OrderStatus, Revenue

logger = logging.getLogger(__name__)

HAPPY_PATH = [OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.SERVED]
TERMINAL = {OrderStatus.SERVED, OrderStatus.CANCELLED}
CANCELLABLE = {OrderStatus.PENDING, OrderStatus.PREPARING}
GUEST_ALERT = {OrderStatus.READY, OrderStatus.SERVED}

ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    status: frozenset(
        HAPPY_PATH[i + 1:] + ([OrderStatus.CANCELLED] if status in CANCELLABLE else [])
    )
    for i, status in enumerate(HAPPY_PATH)
}
ALLOWED_TRANSITIONS[OrderStatus.CANCELLED] = frozenset()


def parse_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidArgument(f"Invalid status value: {value!r}")


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def order_settlement_id(order_id: str) -> str:
    return f"order:{order_id}"


def to_wire(order: Optional[dict]) -> Optional[dict]:
    """Strip bookkeeping fields from a stored order."""
    if order is None:
        return None
    return with_utc_dates({k: v for k, v in order.items() if k not in OrderStore.INTERNAL_FIELDS})


class OrderService:
    def __init__(self, orders: OrderStore, catalog: CatalogStore, ledger: RevenueLedger, fanout: NotificationFanOut):
        self.orders = orders
        self.catalog = catalog
        self.ledger = ledger
        self.fanout = fanout

    # ---------------- creation ----------------

    def create_order(self, table_id: str, guest_id: str, items: Iterable[CartItem]) -> dict:
        table_id = (table_id or "").strip()
        guest_id = (guest_id or "").strip()
        items = list(items or [])
        if not table_id:
            raise InvalidArgument("tableId is required")
        if not guest_id:
            raise InvalidArgument("guestId is required")
        if not items:
            raise InvalidArgument("Order must contain at least one item")

        resolved: List[OrderItem] = []
        for requested in items:
            if not requested.food:
                raise InvalidArgument("Every item needs a food reference")
            if requested.quantity < 1:
                raise InvalidArgument("Item quantity must be at least 1")
            food = self.catalog.get(requested.food)
            if food is None:
                raise NotFound(f"Food item {requested.food} not found")
            resolved.append(OrderItem(
                food=food["_id"],
                name=food["name"],
                price=float(food["price"]),
                quantity=requested.quantity,
            ))

        total_price = round(sum(i.price * i.quantity for i in resolved), 2)
        order = Order(table_id=table_id, guest_id=guest_id, items=resolved, total_price=total_price)
        order_id = self.orders.insert(order)
        created = to_wire(self.orders.get(order_id))
        logger.info("Order %s created for table %s (total %.2f)", order_id, table_id, total_price)
        self._notify(NEW_ORDER, created)
        return created

    # ---------------- reads ----------------

    def active_orders(self) -> List[dict]:
        return [to_wire(o) for o in self.orders.find_active()]

    def guest_orders(self, guest_id: Optional[str], table_id: Optional[str]) -> List[dict]:
        if not guest_id or not table_id:
            raise InvalidArgument("guestId and tableId are required")
        return [to_wire(o) for o in self.orders.find_by_guest_and_table(guest_id, table_id)]

    # ---------------- transitions ----------------

    def transition_status(self, order_id: str, new_status: Any, expected_status: Any = None) -> dict:
        status = parse_status(new_status)
        expected = parse_status(expected_status) if expected_status is not None else None
        order = self._get(order_id)
        current = OrderStatus(order["status"])

        if expected is not None and current != expected:
            raise Conflict(f"Order is {current.value}, expected {expected.value}")
        if current in TERMINAL:
            raise Conflict(f"Order is already {current.value}")
        if not can_transition(current, status):
            raise Conflict(f"Cannot move order from {current.value} to {status.value}")

        updated = self.orders.update_status(order_id, current.value, status.value)
        if updated is None:
            self._get(order_id)
            raise Conflict("Order status changed concurrently")
        logger.info("Order %s: %s -> %s", order_id, current.value, status.value)

        if status is OrderStatus.SERVED:
            self._count_sold(updated)

        payload = to_wire(updated)
        self._notify(ORDER_UPDATED, payload)
        if status in GUEST_ALERT:
            self._notify_table(updated["tableId"], ORDER_STATUS_UPDATE, payload)
        return payload

    # ---------------- settlement ----------------

    def settle_and_delete(self, order_id: str) -> dict:
        """Record the order's total as revenue, then remove the order."""
        settlement_id = order_settlement_id(order_id)
        order = self.orders.claim_for_settlement(order_id, settlement_id)
        if order is None:
            existing = self._get(order_id)
            raise Conflict(f"Order {existing['_id']} is already being settled")
        self._record_revenue(settlement_id, [order])
        if self.orders.delete(order_id):
            logger.info("Order %s settled (%.2f)", order_id, order["totalPrice"])
            self._notify(ORDER_DELETED, {"id": order["_id"]})
        return with_utc_dates(self.ledger.get_by_settlement(settlement_id))

    def clear_guest_orders(self, guest_id: str) -> dict:
        """Settle every order of a guest into one revenue record and delete them.

        Settlements a previous call left unfinished are completed as well.
        """
        if not guest_id:
            raise InvalidArgument("guestId is required")
        self.orders.claim_guest_orders(guest_id, f"guest:{guest_id}:{ObjectId()}")
        settlement_ids = self.orders.settlements_for_guest(guest_id)

        records, deleted = [], []
        for settlement_id in settlement_ids:
            orders = self.orders.find_by_settlement(settlement_id)
            if not orders:
                continue
            self._record_revenue(settlement_id, orders)
            for order in orders:
                self._count_sold(order)
            self.orders.delete_many({"settlementId": settlement_id})
            deleted.extend(o["_id"] for o in orders)
            records.append(with_utc_dates(self.ledger.get_by_settlement(settlement_id)))

        if not deleted:
            raise NotFound("No orders found")
        for order_id in deleted:
            self._notify(ORDER_DELETED, {"id": order_id})
        total = round(sum(r["totalAmount"] for r in records), 2)
        logger.info("Guest %s cleared: %d orders, %.2f", guest_id, len(deleted), total)
        return {"totalAmount": total, "deletedOrders": deleted, "revenue": records}

    def clear_table(self, table_id: str) -> int:
        """Wipe a table's orders. No revenue and no sold counters."""
        orders = self.orders.find_by_table(table_id)
        if not orders:
            raise NotFound("No orders found for this table")
        ids = [o["_id"] for o in orders]
        count = self.orders.delete_many({"_id": {"$in": [ObjectId(i) for i in ids]}})
        logger.info("Table %s wiped (%d orders)", table_id, count)
        for order_id in ids:
            self._notify(ORDER_DELETED, {"id": order_id})
        return count

    # ---------------- helpers ----------------

    def _get(self, order_id: str) -> dict:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    def _record_revenue(self, settlement_id: str, orders: List[dict]) -> None:
        first = orders[0]
        record = Revenue(
            guest_id=first["guestId"],
            table_id=first.get("tableId") or "unknown",
            total_amount=round(sum(o["totalPrice"] for o in orders), 2),
            order_ids=[o["_id"] for o in orders],
        )
        if not self.ledger.record_settlement(settlement_id, record):
            logger.info("Revenue for settlement %s already recorded", settlement_id)

    def _count_sold(self, order: dict) -> None:
        if not self.orders.mark_sold_counted(order["_id"]):
            return
        for item in order["items"]:
            if not self.catalog.increment_sold(item["food"], item["quantity"]):
                logger.warning("Food item %s vanished, sold count for order %s skipped", item["food"], order["_id"])

    def _notify(self, event: str, payload: Any) -> None:
        try:
            self.fanout.broadcast_all(event, payload)
        except Exception:
            logger.warning("Broadcast of %s failed", event, exc_info=True)

    def _notify_table(self, table_id: str, event: str, payload: Any) -> None:
        try:
            self.fanout.broadcast_to_channel(table_id, event, payload)
        except Exception:
            logger.warning("Broadcast of %s to table %s failed", event, table_id, exc_info=True)
