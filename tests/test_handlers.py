import pytest

from app.handlers import STORE_DOWN_MESSAGE, ActionHandlers
from app.models import AuditAction, AuditResult, OrderStatus
from conftest import USER, DownOrderStore
from llm.schemas import ActionKind, StructuredIntent


@pytest.fixture
def handlers(orders, sessions, audit):
    return ActionHandlers(orders, sessions, audit)


def _intent(action, order_id=None, product_name=None, message="Working on your request now."):
    return StructuredIntent(action=action, order_id=order_id, product_name=product_name, confidence=0.9,
                            message=message)


def test_list_orders_shows_only_own_orders(handlers, ctx):
    out = handlers.list_orders(_intent(ActionKind.LIST_ORDERS), ctx)

    assert out.message.startswith("You have 7 orders:")
    assert "ORD-2024-101" not in out.message
    assert "Wireless Headphones" in out.message


def test_status_check_reports_live_status(handlers, ctx, sessions, audit_store):
    out = handlers.status_check(_intent(ActionKind.STATUS_CHECK, "ORD-2024-002"), ctx)

    assert "has been confirmed" in out.message
    assert "$129.99" in out.message
    assert out.order_id == "ORD-2024-002"
    assert sessions.get_context("s1", USER).last_order_inquiry == "ORD-2024-002"
    assert [r.action for r in audit_store.records] == [AuditAction.ORDER_STATUS_CHECK]


@pytest.mark.parametrize(
    "product, expected",
    [
        ("headphones", "ORD-2024-002"),
        ("bluetooth headphones", "ORD-2024-002"),
        ("earphones", "ORD-2024-007"),
        ("keyboard", "ORD-2024-003"),
    ],
)
def test_status_by_product_name(handlers, ctx, product, expected):
    out = handlers.status_check(_intent(ActionKind.STATUS_CHECK, product_name=product), ctx)
    assert out.order_id == expected


def test_status_by_unknown_product(handlers, ctx):
    out = handlers.status_check(_intent(ActionKind.STATUS_CHECK, product_name="garden hose"), ctx)

    assert out.order_id is None
    assert "garden hose" in out.message


def test_refund_status_lists_refunds(handlers, ctx):
    out = handlers.refund_status(_intent(ActionKind.REFUND_STATUS), ctx)

    assert out.message.startswith("You have 2 refunds")
    assert "ORD-2024-005" in out.message and "ORD-2024-006" in out.message


def test_refund_status_for_one_order(handlers, ctx):
    out = handlers.refund_status(_intent(ActionKind.REFUND_STATUS, "ORD-2024-006"), ctx)

    assert "is being processed" in out.message
    assert out.order_id == "ORD-2024-006"


def test_track_order_lists_shipped_orders(handlers, ctx):
    out = handlers.track_order(_intent(ActionKind.TRACK_ORDER), ctx)

    assert "2 shipped orders" in out.message
    assert "ORD-2024-003" in out.message and "ORD-2024-004" in out.message


def test_track_specific_shipped_order(handlers, ctx):
    out = handlers.track_specific_order(_intent(ActionKind.TRACK_SPECIFIC_ORDER, "ORD-2024-003"), ctx)

    assert "Tracking history:" in out.message
    assert "Tracking number: TRK-88231" in out.message
    assert "Toronto Distribution Center" in out.message


def test_track_specific_order_not_shipped(handlers, ctx):
    out = handlers.track_specific_order(_intent(ActionKind.TRACK_SPECIFIC_ORDER, "ORD-2024-001"), ctx)
    assert "available once it ships" in out.message


def test_cancel_orders_lists_cancellable_only(handlers, ctx):
    out = handlers.cancel_orders(_intent(ActionKind.CANCEL_ORDERS), ctx)

    for oid in ("ORD-2024-001", "ORD-2024-002", "ORD-2024-007"):
        assert oid in out.message
    assert "ORD-2024-003" not in out.message


def test_cancellation_request_asks_for_confirmation(handlers, ctx, sessions, audit_store, orders):
    out = handlers.order_cancellation(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001"), ctx)

    assert out.requires_confirmation is True
    assert out.action == ActionKind.ORDER_CANCELLATION
    assert "Are you sure" in out.message
    assert sessions.get_context("s1", USER).pending_cancellation == "ORD-2024-001"
    assert orders.find_by_order_id("ORD-2024-001").status == OrderStatus.PENDING

    request = audit_store.records[-1]
    assert request.action == AuditAction.ORDER_CANCELLATION_REQUEST
    assert request.result == AuditResult.PARTIAL


def test_confirm_cancellation_writes_once(handlers, ctx, sessions, orders, audit_store):
    sessions.set_pending_cancellation("s1", USER, "ORD-2024-002")
    out = handlers.confirm_cancellation(_intent(ActionKind.CONFIRM_CANCELLATION, "ORD-2024-002"), ctx)

    assert out.code == "cancelled"
    assert out.mutated
    assert "$129.99" in out.message
    assert orders.find_by_order_id("ORD-2024-002").status == OrderStatus.CANCELLED
    assert sessions.get_context("s1", USER).pending_cancellation is None
    assert audit_store.records[-1].action == AuditAction.ORDER_CANCELLATION_APPROVED

    again = handlers.cancel("ORD-2024-002", ctx)
    assert again.code == "not_cancellable"
    assert not again.mutated


def test_confirm_without_order_asks_which(handlers, ctx, orders):
    out = handlers.confirm_cancellation(_intent(ActionKind.CONFIRM_CANCELLATION), ctx)

    assert "Which order" in out.message
    assert out.code is None


def test_cancel_foreign_order_is_not_found(handlers, ctx, orders):
    out = handlers.cancel("ORD-2024-101", ctx)

    assert out.code == "not_found"
    assert orders.find_by_order_id("ORD-2024-101").status == OrderStatus.PENDING


def test_cancel_abort_clears_pending(handlers, ctx, sessions):
    sessions.set_pending_cancellation("s1", USER, "ORD-2024-001")
    out = handlers.cancel_abort(_intent(ActionKind.CANCEL_ABORT, "ORD-2024-001"), ctx)

    assert out.message == "No problem, order ORD-2024-001 remains active."
    assert sessions.get_context("s1", USER).pending_cancellation is None


def test_unhandled_action_echoes_intent_message(handlers, ctx):
    out = handlers.handle(_intent(ActionKind.GENERAL_INQUIRY, message="I can help with your orders."), ctx)
    assert out.message == "I can help with your orders."


def test_store_outage_gives_friendly_message(sessions, audit, ctx, audit_store):
    handlers = ActionHandlers(DownOrderStore(), sessions, audit)

    assert handlers.handle(_intent(ActionKind.LIST_ORDERS), ctx).message == STORE_DOWN_MESSAGE

    out = handlers.cancel("ORD-2024-001", ctx)
    assert out.code == "unavailable"
    assert audit_store.records[-1].action == AuditAction.ORDER_CANCELLATION_DENIED
