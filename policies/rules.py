from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from app.models import CANCELLABLE_STATUSES, FINAL_STATUSES, Order, OrderStatus, RequestContext
from llm.schemas import ActionKind, StructuredIntent


DEFAULT_RISK_WEIGHT = 25
RULE_ERROR_WEIGHT = 50

MAX_CANCELLATIONS_PER_DAY = 5
RATE_LIMIT_PER_5_MIN = 50


@dataclass(frozen=True)
class ValidationCheck:
    name: str
    passed: bool
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    risk_weight: int = 0
    recommendation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RuleLimits:
    max_cancellations_per_day: int = MAX_CANCELLATIONS_PER_DAY
    rate_limit_per_5_min: int = RATE_LIMIT_PER_5_MIN
    cancellable_statuses: FrozenSet[OrderStatus] = CANCELLABLE_STATUSES


@dataclass(frozen=True)
class ValidationSnapshot:
    """
    Everything the rules may look at, fetched once before any rule runs.
    order_error is set when the order store could not answer.
    """
    order: Optional[Order] = None
    order_error: Optional[str] = None
    recent_cancellations: int = 0
    recent_requests: int = 0
    limits: RuleLimits = field(default_factory=RuleLimits)


Rule = Callable[[StructuredIntent, RequestContext, ValidationSnapshot], ValidationCheck]


def _fail(name: str, reason: str, weight: int = DEFAULT_RISK_WEIGHT, recommendation: Optional[str] = None,
          **details: Any) -> ValidationCheck:
    return ValidationCheck(name, False, reason, details, weight, recommendation)


def _pass(name: str, reason: str, **details: Any) -> ValidationCheck:
    return ValidationCheck(name, True, reason, details, 0)


def _unknown_to_caller(ctx: RequestContext, snap: ValidationSnapshot) -> bool:
    # a foreign order reads exactly like a missing one, so its status never reaches the caller
    return snap.order_error is not None or snap.order is None or snap.order.owner_id != ctx.user_id


# -----------------------------
# Rules
# -----------------------------
def order_exists(intent: StructuredIntent, ctx: RequestContext, snap: ValidationSnapshot) -> ValidationCheck:
    name = "orderExists"
    if not intent.order_id:
        return _fail(name, "Order ID is required")
    if snap.order_error:
        return _fail(name, f"Order {intent.order_id} could not be looked up", 50, store_error=snap.order_error)
    if snap.order is None:
        return _fail(name, f"Order {intent.order_id} not found", 50, order_id=intent.order_id)
    return _pass(name, "Order exists", order_id=snap.order.order_id, status=snap.order.status.value)


def order_belongs_to_user(intent: StructuredIntent, ctx: RequestContext, snap: ValidationSnapshot) -> ValidationCheck:
    name = "orderBelongsToUser"
    if not intent.order_id or not ctx.user_id:
        return _fail(name, "Order ID and user ID are required", 75)
    if snap.order_error:
        return _fail(name, "Order ownership could not be verified", 75, store_error=snap.order_error)
    if snap.order is None:
        return _fail(name, f"Order {intent.order_id} not found", 75)
    if snap.order.owner_id != ctx.user_id:
        # reason is shown to the caller: never name the real owner
        return _fail(
            name,
            f"Order {intent.order_id} could not be verified for this account",
            100,
            "Verify the order ID belongs to your account",
            owner_mismatch=True,
            requesting_user=ctx.user_id,
        )
    return _pass(name, "Order belongs to user")


def order_is_cancellable(intent: StructuredIntent, ctx: RequestContext, snap: ValidationSnapshot) -> ValidationCheck:
    name = "orderIsCancellable"
    if _unknown_to_caller(ctx, snap):
        return _fail(name, "Order not found or unavailable")

    status = snap.order.status
    if status in snap.limits.cancellable_statuses:
        return _pass(name, "Order can be cancelled", status=status.value)

    if status in {OrderStatus.SHIPPED, OrderStatus.DELIVERED}:
        rec = "Contact customer service to arrange a return"
    elif status == OrderStatus.CANCELLED:
        rec = "This order has already been cancelled"
    else:
        rec = "Contact customer service for assistance"
    return _fail(
        name,
        f"Order cannot be cancelled (status: {status.value})",
        15,
        rec,
        status=status.value,
        cancellable_statuses=sorted(s.value for s in snap.limits.cancellable_statuses),
    )


def no_recent_cancellations(intent: StructuredIntent, ctx: RequestContext, snap: ValidationSnapshot) -> ValidationCheck:
    name = "noRecentCancellations"
    limit = snap.limits.max_cancellations_per_day
    if snap.recent_cancellations >= limit:
        return _fail(
            name,
            f"Too many cancellation requests in 24 hours ({snap.recent_cancellations}/{limit})",
            40,
            "Wait 24 hours before attempting another cancellation",
            count=snap.recent_cancellations,
            limit=limit,
        )
    return _pass(name, "Cancellation rate within limits", count=snap.recent_cancellations, limit=limit)


def valid_order_status(intent: StructuredIntent, ctx: RequestContext, snap: ValidationSnapshot) -> ValidationCheck:
    name = "validOrderStatus"
    if _unknown_to_caller(ctx, snap):
        return _fail(name, "Order not found or unavailable")

    status = snap.order.status
    if status in FINAL_STATUSES:
        rec = (
            "Contact customer service to arrange a return"
            if status == OrderStatus.SHIPPED
            else "This order has already been processed"
        )
        return _fail(name, f"Order status '{status.value}' does not allow this action", 10, rec,
                     status=status.value)
    return _pass(name, "Order status allows this action", status=status.value)


def rate_limit_check(intent: StructuredIntent, ctx: RequestContext, snap: ValidationSnapshot) -> ValidationCheck:
    name = "rateLimitCheck"
    limit = snap.limits.rate_limit_per_5_min
    if snap.recent_requests >= limit:
        return _fail(
            name,
            f"Rate limit exceeded ({snap.recent_requests}/{limit} in 5 minutes)",
            30,
            "Please slow down your requests",
            count=snap.recent_requests,
            limit=limit,
        )
    return _pass(name, "Request rate within limits", count=snap.recent_requests, limit=limit)


RULES: Dict[str, Rule] = {
    "orderExists": order_exists,
    "orderBelongsToUser": order_belongs_to_user,
    "orderIsCancellable": order_is_cancellable,
    "noRecentCancellations": no_recent_cancellations,
    "validOrderStatus": valid_order_status,
    "rateLimitCheck": rate_limit_check,
}

ORDER_RULES = frozenset({"orderExists", "orderBelongsToUser", "orderIsCancellable", "validOrderStatus"})

# Every action has an entry. An empty tuple means "read-only, owner-scoped: nothing to check".
RULESETS: Dict[ActionKind, Tuple[str, ...]] = {
    ActionKind.ORDER_CANCELLATION: (
        "orderExists", "orderBelongsToUser", "orderIsCancellable", "noRecentCancellations", "validOrderStatus",
    ),
    ActionKind.CONFIRM_CANCELLATION: (
        "orderExists", "orderBelongsToUser", "orderIsCancellable", "validOrderStatus",
    ),
    ActionKind.STATUS_CHECK: ("orderExists", "orderBelongsToUser"),
    ActionKind.TRACK_SPECIFIC_ORDER: ("orderExists", "orderBelongsToUser"),
    ActionKind.GENERAL_INQUIRY: ("rateLimitCheck",),
    ActionKind.LIST_ORDERS: (),
    ActionKind.TRACK_ORDER: (),
    ActionKind.CANCEL_ORDERS: (),
    ActionKind.REFUND_STATUS: (),
    ActionKind.CANCEL_ABORT: (),
    ActionKind.CLARIFICATION_NEEDED: (),
    ActionKind.ERROR: (),
}

# status by product name only searches the caller's own orders
PRODUCT_LOOKUP_RULES: Tuple[str, ...] = ("rateLimitCheck",)


def rules_for(intent: StructuredIntent) -> Tuple[str, ...]:
    if intent.action == ActionKind.STATUS_CHECK and not intent.order_id and intent.product_name:
        return PRODUCT_LOOKUP_RULES
    return RULESETS[intent.action]
