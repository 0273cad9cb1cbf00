import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Protocol

from google.api_core import exceptions as gexc
from google.cloud import firestore
from pydantic import ValidationError

from app.config import get_firestore_client
from app.models import (
    CANCELLABLE_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    TrackingEvent,
    now_iso,
)

logger = logging.getLogger(__name__)

ORDERS_COLLECTION = "orders"


class OrderStoreUnavailable(RuntimeError):
    """The order backend could not answer. Callers must not assume anything about the order."""


def _parse_order(data: Optional[Dict[str, Any]], doc_id: str) -> Order:
    try:
        return Order.model_validate(data or {})
    except ValidationError as exc:
        raise OrderStoreUnavailable(f"malformed order document {doc_id}: {exc.error_count()} invalid field(s)") from exc


@dataclass(frozen=True)
class UpdateResult:
    matched: bool
    modified: bool
    previous_status: Optional[str] = None


class OrderStore(Protocol):
    def find_by_order_id(self, order_id: str) -> Optional[Order]: ...

    def find_by_owner(self, owner_id: str) -> List[Order]: ...

    def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        reason: Optional[str] = None,
        *,
        owner_id: Optional[str] = None,
        allowed_from: Iterable[OrderStatus] = CANCELLABLE_STATUSES,
    ) -> UpdateResult: ...


def _status_patch(new_status: OrderStatus, reason: Optional[str], current: Dict[str, Any]) -> Dict[str, Any]:
    patch: Dict[str, Any] = {"status": new_status.value, "updated_at": now_iso()}
    if new_status == OrderStatus.CANCELLED:
        patch["cancelled_at"] = now_iso()
        patch["cancellation_reason"] = reason or "Customer requested cancellation"
        if current.get("payment_status") == "paid":
            patch["payment_status"] = "refund_pending"
    return patch


def _sort_newest_first(orders: List[Order]) -> List[Order]:
    return sorted(orders, key=lambda o: o.order_date or "", reverse=True)


# --------------------------------------------------
# Firestore
# --------------------------------------------------
class FirestoreOrderStore:
    """
    Orders live in Firestore collection `orders`, one document per order id.
    """

    def __init__(self, client=None, collection: str = ORDERS_COLLECTION) -> None:
        self._db = client or get_firestore_client()
        self._collection = collection

    def _ref(self, order_id: str):
        return self._db.collection(self._collection).document(order_id.upper())

    def find_by_order_id(self, order_id: str) -> Optional[Order]:
        try:
            doc = self._ref(order_id).get()
        except gexc.GoogleAPIError as exc:
            raise OrderStoreUnavailable(f"order lookup failed: {exc}") from exc

        if not doc.exists:
            return None
        return _parse_order(doc.to_dict(), order_id)

    def find_by_owner(self, owner_id: str) -> List[Order]:
        # single-field query, sorted in Python (no composite index needed)
        try:
            q = self._db.collection(self._collection).where("owner_id", "==", owner_id)
            docs = list(q.stream())
        except gexc.GoogleAPIError as exc:
            raise OrderStoreUnavailable(f"order listing failed: {exc}") from exc

        orders = [_parse_order(d.to_dict(), d.id) for d in docs]
        return _sort_newest_first(orders)

    def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        reason: Optional[str] = None,
        *,
        owner_id: Optional[str] = None,
        allowed_from: Iterable[OrderStatus] = CANCELLABLE_STATUSES,
    ) -> UpdateResult:
        """
        Conditional write: only applies while the stored status is still in
        allowed_from, checked and written inside one transaction.
        """
        ref = self._ref(order_id)
        allowed = {s.value for s in allowed_from}

        @firestore.transactional
        def _apply(transaction) -> UpdateResult:
            snap = ref.get(transaction=transaction)
            if not snap.exists:
                return UpdateResult(False, False)
            data = snap.to_dict() or {}
            if owner_id is not None and data.get("owner_id") != owner_id:
                return UpdateResult(False, False)
            current = data.get("status")
            if current not in allowed:
                return UpdateResult(True, False, current)
            transaction.update(ref, _status_patch(new_status, reason, data))
            return UpdateResult(True, True, current)

        try:
            return _apply(self._db.transaction())
        except gexc.GoogleAPIError as exc:
            raise OrderStoreUnavailable(f"order update failed: {exc}") from exc

    def upsert(self, order: Order) -> None:
        self._ref(order.order_id).set(order.model_dump(mode="json"))


# --------------------------------------------------
# In-memory (dev + tests)
# --------------------------------------------------
class InMemoryOrderStore:
    def __init__(self, orders: Iterable[Order] = ()) -> None:
        self._orders: Dict[str, Order] = {}
        self._lock = Lock()
        for order in orders:
            self.upsert(order)

    def upsert(self, order: Order) -> None:
        with self._lock:
            self._orders[order.order_id.upper()] = order.model_copy(deep=True)

    def find_by_order_id(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get((order_id or "").upper())
            return order.model_copy(deep=True) if order else None

    def find_by_owner(self, owner_id: str) -> List[Order]:
        with self._lock:
            orders = [o.model_copy(deep=True) for o in self._orders.values() if o.owner_id == owner_id]
        return _sort_newest_first(orders)

    def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        reason: Optional[str] = None,
        *,
        owner_id: Optional[str] = None,
        allowed_from: Iterable[OrderStatus] = CANCELLABLE_STATUSES,
    ) -> UpdateResult:
        allowed = set(allowed_from)
        with self._lock:
            order = self._orders.get((order_id or "").upper())
            if order is None or (owner_id is not None and order.owner_id != owner_id):
                return UpdateResult(False, False)
            previous = order.status.value
            if order.status not in allowed:
                return UpdateResult(True, False, previous)
            patch = _status_patch(new_status, reason, order.model_dump(mode="json"))
            patch.pop("updated_at", None)
            self._orders[order.order_id.upper()] = order.model_copy(update={**patch, "status": new_status})
            return UpdateResult(True, True, previous)


def build_order_store(kind: str, seed_demo: bool = False) -> OrderStore:
    if kind == "firestore":
        return FirestoreOrderStore()
    store = InMemoryOrderStore()
    if seed_demo:
        for order in demo_orders():
            store.upsert(order)
        logger.info("seeded in-memory order store with demo orders")
    return store


# --------------------------------------------------
# Demo data
# --------------------------------------------------
def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def demo_orders(owner_id: str = "user123", other_owner_id: str = "user456") -> List[Order]:
    now = datetime.now(timezone.utc)

    def _order(order_id, owner, status, items, total, days_ago, **extra) -> Order:
        placed = now - timedelta(days=days_ago)
        return Order(
            order_id=order_id,
            owner_id=owner,
            status=status,
            items=[OrderItem(name=n, quantity=1, price=p) for n, p in items],
            total_amount=total,
            order_date=_iso(placed),
            estimated_delivery=_iso(placed + timedelta(days=5)),
            payment_status=extra.pop("payment_status", "paid"),
            **extra,
        )

    shipped_date = now - timedelta(days=3)
    return [
        _order("ORD-2024-001", owner_id, OrderStatus.PENDING, [("Laptop Stand", 49.99)], 49.99, 1),
        _order("ORD-2024-002", owner_id, OrderStatus.CONFIRMED, [("Wireless Headphones", 129.99)], 129.99, 2),
        _order(
            "ORD-2024-003", owner_id, OrderStatus.SHIPPED, [("Mechanical Keyboard", 89.5)], 89.5, 4,
            tracking_number="TRK-88231", current_location="Toronto Distribution Center",
            tracking=[
                TrackingEvent(ts=_iso(shipped_date - timedelta(days=1)), status="processing",
                              location="Fulfillment Center", description="Order processed and packaged"),
                TrackingEvent(ts=_iso(shipped_date), status="shipped",
                              location="Distribution Center", description="Package shipped"),
            ],
        ),
        _order("ORD-2024-004", owner_id, OrderStatus.DELIVERED, [("USB-C Hub", 39.0)], 39.0, 10,
               tracking_number="TRK-77120", current_location="Delivered to your address"),
        _order("ORD-2024-005", owner_id, OrderStatus.CANCELLED, [("Phone Case", 19.99)], 19.99, 12,
               payment_status="refunded", cancellation_reason="Customer requested cancellation"),
        _order("ORD-2024-006", owner_id, OrderStatus.REFUND_PENDING, [("Smart Watch", 199.0)], 199.0, 15),
        _order("ORD-2024-007", owner_id, OrderStatus.PROCESSING, [("Bluetooth Earphones", 59.99)], 59.99, 1),
        _order("ORD-2024-101", other_owner_id, OrderStatus.PENDING, [("Desk Lamp", 34.99)], 34.99, 1),
    ]
