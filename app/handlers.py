import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from app.models import (
    CANCELLABLE_STATUSES,
    AuditAction,
    AuditRecord,
    AuditResult,
    AuditSeverity,
    Order,
    OrderStatus,
    RequestContext,
)
from llm.schemas import ActionKind, StructuredIntent
from policies.diagnosis import product_search_terms
from tools.logs import AuditLogger
from tools.orders import OrderStore, OrderStoreUnavailable
from tools.sessions import ConversationContextManager
from tools.tracking import SHIPPED_STATUSES, format_tracking, get_tracking

logger = logging.getLogger(__name__)

STORE_DOWN_MESSAGE = (
    "I'm having trouble reaching the order system right now. "
    "Please try again in a few minutes, or a customer executive will reach out to you."
)

STATUS_MESSAGES = {
    OrderStatus.PENDING: "is being processed",
    OrderStatus.CONFIRMED: "has been confirmed",
    OrderStatus.PROCESSING: "is currently being processed",
    OrderStatus.SHIPPED: "has been shipped",
    OrderStatus.DELIVERED: "has been delivered",
    OrderStatus.CANCELLED: "has been cancelled",
    OrderStatus.REFUND_PENDING: "has a refund pending",
    OrderStatus.REFUNDED: "has been refunded",
    OrderStatus.RETURNED: "has been returned",
}

STATUS_NEXT_STEPS = {
    OrderStatus.PENDING: "You can still cancel this order if needed.",
    OrderStatus.CONFIRMED: "Your order is confirmed and will be shipped soon.",
    OrderStatus.PROCESSING: "We're preparing your order for shipment.",
    OrderStatus.SHIPPED: "Your order is on its way! Ask me to track it for updates.",
    OrderStatus.DELIVERED: "Your order has been delivered. Hope you enjoy it!",
    OrderStatus.CANCELLED: "This order has been cancelled.",
    OrderStatus.REFUND_PENDING: "Your refund is being processed.",
    OrderStatus.REFUNDED: "Your refund has been completed.",
    OrderStatus.RETURNED: "The return has been received.",
}

REFUND_STATUSES = {OrderStatus.REFUND_PENDING, OrderStatus.REFUNDED}


@dataclass
class HandlerOutcome:
    message: str
    action: Optional[ActionKind] = None
    order_id: Optional[str] = None
    requires_confirmation: Optional[bool] = None
    mutated: bool = False
    code: Optional[str] = None


def _money(amount: float) -> str:
    return f"${amount:,.2f}"


def _order_line(order: Order) -> str:
    return f"- {order.order_id}: {order.item_names} - {_money(order.total_amount)} ({order.status.value.replace('_', ' ')})"


def _order_list(orders: List[Order]) -> str:
    return "\n".join(_order_line(o) for o in orders)


def _is_refund(order: Order) -> bool:
    return order.status in REFUND_STATUSES or (
        order.status == OrderStatus.CANCELLED and order.payment_status in {"refunded", "refund_pending"}
    )


class ActionHandlers:
    """
    Turns a validated intent into the reply the customer sees, using live
    order data. confirm_cancellation is the only handler that writes.
    """

    def __init__(self, orders: OrderStore, sessions: ConversationContextManager, audit: AuditLogger) -> None:
        self._orders = orders
        self._sessions = sessions
        self._audit = audit
        self._dispatch: Dict[ActionKind, Callable[[StructuredIntent, RequestContext], HandlerOutcome]] = {
            ActionKind.LIST_ORDERS: self.list_orders,
            ActionKind.STATUS_CHECK: self.status_check,
            ActionKind.REFUND_STATUS: self.refund_status,
            ActionKind.TRACK_ORDER: self.track_order,
            ActionKind.TRACK_SPECIFIC_ORDER: self.track_specific_order,
            ActionKind.CANCEL_ORDERS: self.cancel_orders,
            ActionKind.ORDER_CANCELLATION: self.order_cancellation,
            ActionKind.CONFIRM_CANCELLATION: self.confirm_cancellation,
            ActionKind.CANCEL_ABORT: self.cancel_abort,
        }

    def handle(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        handler = self._dispatch.get(intent.action)
        if handler is None:
            return HandlerOutcome(intent.message)
        try:
            return handler(intent, ctx)
        except OrderStoreUnavailable as exc:
            logger.warning("order store unavailable in %s handler: %s", intent.action.value, exc)
            return HandlerOutcome(STORE_DOWN_MESSAGE)

    # -----------------------------
    # read-only
    # -----------------------------
    def list_orders(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        orders = self._orders.find_by_owner(ctx.user_id)
        if not orders:
            return HandlerOutcome("You don't have any orders yet.")
        return HandlerOutcome(
            f"You have {len(orders)} order{'s' if len(orders) != 1 else ''}:\n"
            f"{_order_list(orders)}\n"
            "Which one would you like to check?"
        )

    def status_check(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        if not intent.order_id and intent.product_name:
            return self._product_status(intent, ctx)

        order = self._orders.find_by_order_id(intent.order_id or "")
        if order is None or order.owner_id != ctx.user_id:
            return HandlerOutcome(f"I couldn't find order {intent.order_id} on your account.")

        self._sessions.update(ctx.session_id, ctx.user_id, last_order_inquiry=order.order_id)
        self._audit.log_action(
            AuditRecord(
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                action=AuditAction.ORDER_STATUS_CHECK,
                order_id=order.order_id,
                result=AuditResult.SUCCESS,
                details={"status": order.status.value},
                ip_address=ctx.ip_address,
            )
        )

        placed = (order.order_date or "")[:10] or "an unknown date"
        return HandlerOutcome(
            f"Order {order.order_id} ({order.item_names}) {STATUS_MESSAGES.get(order.status, 'is ' + order.status.value)}.\n"
            f"Total: {_money(order.total_amount)}. Ordered on {placed}.\n"
            f"{STATUS_NEXT_STEPS.get(order.status, 'Contact customer service for more information.')}",
            order_id=order.order_id,
        )

    def _product_status(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        orders = self._orders.find_by_owner(ctx.user_id)
        matches: List[Order] = []
        for term in product_search_terms(intent.product_name or ""):
            matches = [o for o in orders if any(term in i.name.lower() for i in o.items)]
            if matches:
                break

        if not matches:
            return HandlerOutcome(
                f'I couldn\'t find any orders for "{intent.product_name}" or similar products. '
                "You can ask me to show all your orders."
            )
        if len(matches) == 1:
            order = matches[0]
            return HandlerOutcome(
                f"Your {order.items[0].name if order.items else 'order'} (order {order.order_id}) "
                f"is currently {order.status.value.replace('_', ' ')}. Order total: {_money(order.total_amount)}.",
                order_id=order.order_id,
            )
        return HandlerOutcome(
            f'I found {len(matches)} orders matching "{intent.product_name}":\n'
            f"{_order_list(matches)}\n"
            "Which one would you like to check?"
        )

    def refund_status(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        orders = [o for o in self._orders.find_by_owner(ctx.user_id) if _is_refund(o)]
        if intent.order_id:
            orders = [o for o in orders if o.order_id == intent.order_id]

        if not orders:
            return HandlerOutcome("You don't have any refunds in progress.")

        if len(orders) == 1:
            order = orders[0]
            if order.status == OrderStatus.REFUND_PENDING or order.payment_status == "refund_pending":
                text = (
                    f"Your refund of {_money(order.total_amount)} for order {order.order_id} ({order.item_names}) "
                    "is being processed. It should reach your original payment method within 3-5 working days."
                )
            else:
                text = (
                    f"Your refund of {_money(order.total_amount)} for order {order.order_id} ({order.item_names}) "
                    "has been completed."
                )
            return HandlerOutcome(text, order_id=order.order_id)

        return HandlerOutcome(f"You have {len(orders)} refunds:\n{_order_list(orders)}")

    def track_order(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        orders = [o for o in self._orders.find_by_owner(ctx.user_id) if o.status in SHIPPED_STATUSES]
        if not orders:
            return HandlerOutcome(
                "None of your orders have shipped yet. Tracking information will be available once they ship."
            )
        if len(orders) == 1:
            order = orders[0]
            return HandlerOutcome(format_tracking(order, get_tracking(order)), order_id=order.order_id)
        return HandlerOutcome(
            f"You have {len(orders)} shipped orders:\n{_order_list(orders)}\n"
            "Which one would you like to track?"
        )

    def track_specific_order(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        order = self._orders.find_by_order_id(intent.order_id or "")
        if order is None or order.owner_id != ctx.user_id:
            return HandlerOutcome(f"I couldn't find order {intent.order_id} on your account.")
        if order.status not in SHIPPED_STATUSES:
            return HandlerOutcome(
                f"Order {order.order_id} is currently {order.status.value.replace('_', ' ')}. "
                "Tracking information will be available once it ships.",
                order_id=order.order_id,
            )
        return HandlerOutcome(format_tracking(order, get_tracking(order)), order_id=order.order_id)

    def cancel_orders(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        orders = [o for o in self._orders.find_by_owner(ctx.user_id) if o.status in CANCELLABLE_STATUSES]
        if not orders:
            return HandlerOutcome("You don't have any orders that can be cancelled right now.")
        return HandlerOutcome(
            f"These orders can still be cancelled:\n{_order_list(orders)}\n"
            "Which one would you like to cancel?"
        )

    # -----------------------------
    # cancellation flow
    # -----------------------------
    def order_cancellation(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        order = self._orders.find_by_order_id(intent.order_id or "")
        if order is None or order.owner_id != ctx.user_id:
            return HandlerOutcome(f"I couldn't find order {intent.order_id} on your account.")

        self._sessions.set_pending_cancellation(ctx.session_id, ctx.user_id, order.order_id)
        self._record_outcome(ctx, order.order_id, AuditAction.ORDER_CANCELLATION_REQUEST, AuditResult.PARTIAL,
                             AuditSeverity.INFO, {"status": order.status.value, "confidence": intent.confidence})
        return HandlerOutcome(
            f"Are you sure you want to cancel order {order.order_id} ({order.item_names}, "
            f"{_money(order.total_amount)})? Reply \"yes\" to confirm or \"no\" to keep it.",
            action=ActionKind.ORDER_CANCELLATION,
            order_id=order.order_id,
            requires_confirmation=True,
        )

    def confirm_cancellation(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        order_id = intent.order_id
        if not order_id:
            return HandlerOutcome("There's no cancellation waiting for confirmation. Which order would you like to cancel?")

        self._sessions.set_pending_cancellation(ctx.session_id, ctx.user_id, None)
        return self.cancel(order_id, ctx, "Customer requested cancellation via chat")

    def cancel(self, order_id: str, ctx: RequestContext, reason: Optional[str] = None) -> HandlerOutcome:
        """
        The one order mutation. Callers validate first; the write itself is
        conditional on the order still being cancellable and owned by ctx.user_id.
        outcome.code: cancelled | not_found | not_cancellable | unavailable
        """
        try:
            result = self._orders.update_status(
                order_id,
                OrderStatus.CANCELLED,
                reason or "Customer requested cancellation",
                owner_id=ctx.user_id,
            )
        except OrderStoreUnavailable as exc:
            self._record_outcome(ctx, order_id, AuditAction.ORDER_CANCELLATION_DENIED, AuditResult.FAILURE,
                                 AuditSeverity.ERROR, {"reason": "store_unavailable"}, str(exc))
            return HandlerOutcome(
                f"I couldn't cancel order {order_id} right now. Please try again in a few minutes.",
                order_id=order_id,
                code="unavailable",
            )

        if not result.matched:
            self._record_outcome(ctx, order_id, AuditAction.ORDER_CANCELLATION_DENIED, AuditResult.FAILURE,
                                 AuditSeverity.WARNING, {"reason": "not_found"})
            return HandlerOutcome(f"I couldn't find order {order_id} on your account.", order_id=order_id,
                                  code="not_found")

        if not result.modified:
            # lost the race, or the order moved on since validation
            self._record_outcome(ctx, order_id, AuditAction.ORDER_CANCELLATION_DENIED, AuditResult.FAILURE,
                                 AuditSeverity.INFO,
                                 {"reason": "not_cancellable", "previous_status": result.previous_status})
            return HandlerOutcome(
                f"Order {order_id} could not be cancelled. It may already be cancelled "
                "or in a non-cancellable status.",
                order_id=order_id,
                code="not_cancellable",
            )

        self._record_outcome(ctx, order_id, AuditAction.ORDER_CANCELLATION_APPROVED, AuditResult.SUCCESS,
                             AuditSeverity.INFO, {"previous_status": result.previous_status, "reason": reason})
        try:
            order = self._orders.find_by_order_id(order_id)
        except OrderStoreUnavailable:
            order = None
        refund = f" Your refund of {_money(order.total_amount)}" if order else " Your refund"
        return HandlerOutcome(
            f"Order {order_id} has been cancelled successfully.{refund} will be processed "
            "within 3-5 business days.",
            order_id=order_id,
            mutated=True,
            code="cancelled",
        )

    def cancel_abort(self, intent: StructuredIntent, ctx: RequestContext) -> HandlerOutcome:
        self._sessions.set_pending_cancellation(ctx.session_id, ctx.user_id, None)
        if intent.order_id:
            return HandlerOutcome(f"No problem, order {intent.order_id} remains active.", order_id=intent.order_id)
        return HandlerOutcome("No problem, nothing was cancelled.")

    def _record_outcome(
        self,
        ctx: RequestContext,
        order_id: str,
        action: AuditAction,
        result: AuditResult,
        severity: AuditSeverity,
        details: Dict,
        error_message: Optional[str] = None,
    ) -> None:
        self._audit.log_action(
            AuditRecord(
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                action=action,
                order_id=order_id,
                result=result,
                severity=severity,
                details=details,
                error_message=error_message,
                ip_address=ctx.ip_address,
            )
        )
