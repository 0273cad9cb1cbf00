from datetime import timedelta

import pytest

from app.models import (
    AuditAction,
    AuditRecord,
    AuditResult,
    AuditSeverity,
    Order,
    OrderStatus,
    RequestContext,
)
from conftest import OTHER_USER, USER, BrokenAuditStore, DownOrderStore
from llm.schemas import ActionKind, StructuredIntent
from policies import rules
from policies.rules import RULES, RULESETS, RuleLimits
from policies.validator import ActionValidator
from tools.logs import AuditLogger


def _intent(action, order_id=None, confidence=0.95, product_name=None):
    return StructuredIntent(
        action=action,
        order_id=order_id,
        product_name=product_name,
        confidence=confidence,
        message="Working on your request now.",
    )


def _check(result, name):
    return next(c for c in result.checks if c.name == name)


def _seed_events(audit, action, count, user_id=USER, session_id="s1"):
    for _ in range(count):
        audit.log_action(
            AuditRecord(user_id=user_id, session_id=session_id, action=action, result=AuditResult.SUCCESS)
        )


def test_status_check_on_own_order_passes(validator, ctx):
    result = validator.validate(_intent(ActionKind.STATUS_CHECK, "ORD-2024-002"), ctx)

    assert result.is_valid
    assert result.risk_score == 0
    assert result.rules_applied == ["orderExists", "orderBelongsToUser"]
    assert [c.name for c in result.checks] == ["orderExists", "orderBelongsToUser"]


def test_cancelling_shipped_order_is_a_low_risk_business_failure(validator, ctx):
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-003"), ctx)

    cancellable = _check(result, "orderIsCancellable")
    assert not result.is_valid
    assert not cancellable.passed
    assert cancellable.risk_weight == 15
    assert "return" in cancellable.recommendation.lower()
    assert _check(result, "orderBelongsToUser").passed
    assert result.risk_score == 25


def test_foreign_order_hits_maximum_weight(validator, ctx, audit_store):
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-101"), ctx)

    ownership = _check(result, "orderBelongsToUser")
    assert not result.is_valid
    assert ownership.risk_weight == 100
    assert result.risk_score == 100
    assert OTHER_USER not in " ".join(result.reasons)
    assert OTHER_USER not in str(ownership.details)

    violations = [r for r in audit_store.records if r.action == AuditAction.SECURITY_VIOLATION]
    assert len(violations) == 1
    assert violations[0].result == AuditResult.BLOCKED
    assert violations[0].severity == AuditSeverity.CRITICAL


def test_missing_order_fails_existence(validator, ctx):
    result = validator.validate(_intent(ActionKind.STATUS_CHECK, "ORD-2024-999"), ctx)

    assert not result.is_valid
    assert _check(result, "orderExists").risk_weight == 50
    assert _check(result, "orderBelongsToUser").risk_weight == 75


def test_missing_order_id_fails_with_default_weight(validator, ctx):
    result = validator.validate(_intent(ActionKind.TRACK_SPECIFIC_ORDER), ctx)
    assert _check(result, "orderExists").risk_weight == 25


def test_all_rules_run_after_a_failure(validator, ctx):
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-999"), ctx)

    assert [c.name for c in result.checks] == list(RULESETS[ActionKind.ORDER_CANCELLATION])
    assert len(result.reasons) == 4  # noRecentCancellations still passes


def test_rule_exception_becomes_failing_check(monkeypatch, validator, ctx):
    def boom(intent, context, snapshot):
        raise RuntimeError("boom")

    monkeypatch.setitem(rules.RULES, "orderIsCancellable", boom)
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001"), ctx)

    failed = _check(result, "orderIsCancellable")
    assert not result.is_valid
    assert failed.risk_weight == 50
    assert failed.reason == "boom"
    assert _check(result, "validOrderStatus").passed
    assert result.risk_score == 50


def test_order_store_outage_fails_closed(audit, ctx):
    validator = ActionValidator(DownOrderStore(), audit)
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001"), ctx)

    assert not result.is_valid
    assert "store_error" in _check(result, "orderExists").details
    assert not _check(result, "orderIsCancellable").passed


class _MalformedOrderStore:
    """Answers lookups with a document the order model rejects."""

    def find_by_order_id(self, order_id):
        return Order.model_validate({"order_id": order_id, "owner_id": USER, "status": "on_hold"})


def test_malformed_order_document_fails_closed(audit, ctx, audit_store):
    validator = ActionValidator(_MalformedOrderStore(), audit)
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001"), ctx)

    assert not result.is_valid
    exists = _check(result, "orderExists")
    assert exists.details["store_error"].startswith("ValidationError")
    assert not _check(result, "orderBelongsToUser").passed

    records = [r for r in audit_store.records if r.action == AuditAction.VALIDATION_CHECK]
    assert len(records) == 1
    assert records[0].result == AuditResult.FAILURE


def test_foreign_order_reasons_do_not_reveal_its_status(orders, validator, ctx):
    orders.upsert(Order(order_id="ORD-2024-102", owner_id=OTHER_USER, status=OrderStatus.SHIPPED))
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-102"), ctx)

    assert not result.is_valid
    shown = " ".join(result.reasons + result.recommendations).lower()
    assert "shipped" not in shown
    assert "return" not in shown
    assert "status" not in str(_check(result, "orderIsCancellable").details)
    assert _check(result, "orderIsCancellable").reason == _check(result, "validOrderStatus").reason


def test_audit_outage_fails_open(orders, ctx):
    validator = ActionValidator(orders, AuditLogger(BrokenAuditStore()))

    assert validator.validate(_intent(ActionKind.GENERAL_INQUIRY), ctx).is_valid
    assert validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001"), ctx).is_valid


def test_same_input_gives_same_result(validator, ctx):
    intent = _intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-003")
    first = validator.validate(intent, ctx)
    second = validator.validate(intent, ctx)

    assert first.is_valid == second.is_valid
    assert first.risk_score == second.risk_score
    assert first.reasons == second.reasons
    assert [c.to_dict() for c in first.checks] == [c.to_dict() for c in second.checks]


def test_every_action_has_an_explicit_rule_list():
    assert set(RULESETS) == set(ActionKind)
    for names in RULESETS.values():
        assert all(name in RULES for name in names)


def test_read_only_actions_run_no_rules(validator, ctx):
    result = validator.validate(_intent(ActionKind.LIST_ORDERS), ctx)

    assert result.is_valid
    assert result.checks == []
    assert result.risk_score == 0


def test_product_status_only_runs_rate_limit(validator, ctx):
    result = validator.validate(_intent(ActionKind.STATUS_CHECK, product_name="headphones"), ctx)

    assert result.rules_applied == ["rateLimitCheck"]
    assert result.is_valid


def test_low_confidence_cancellation_adds_risk_but_stays_valid(validator, ctx):
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001", confidence=0.4), ctx)

    assert result.is_valid
    assert result.risk_score == 20
    assert any("confidence" in r.lower() for r in result.recommendations)


def test_suspicious_order_id_adds_risk(orders, validator, ctx):
    orders.upsert(Order(order_id="TEST-1", owner_id=USER, status=OrderStatus.PENDING))
    result = validator.validate(_intent(ActionKind.STATUS_CHECK, "TEST-1"), ctx)

    assert result.is_valid
    assert result.risk_score == 15


def test_burst_of_activity_adds_automation_risk(audit, validator, ctx):
    _seed_events(audit, AuditAction.AI_RESPONSE_GENERATED, 11)
    result = validator.validate(_intent(ActionKind.GENERAL_INQUIRY), ctx)

    assert result.is_valid
    assert result.risk_score == 25


def test_too_many_cancellation_requests(audit, validator, ctx):
    _seed_events(audit, AuditAction.ORDER_CANCELLATION_REQUEST, 5, session_id="other")
    result = validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001"), ctx)

    check = _check(result, "noRecentCancellations")
    assert not result.is_valid
    assert check.risk_weight == 40
    assert result.risk_score == 40


def test_rate_limit_rule(orders, audit, ctx):
    validator = ActionValidator(orders, audit, RuleLimits(rate_limit_per_5_min=3))
    _seed_events(audit, AuditAction.AI_RESPONSE_GENERATED, 3, session_id="other")
    result = validator.validate(_intent(ActionKind.GENERAL_INQUIRY), ctx)

    assert not result.is_valid
    assert _check(result, "rateLimitCheck").risk_weight == 30


def test_other_users_activity_is_not_counted(audit, validator, ctx):
    _seed_events(audit, AuditAction.ORDER_CANCELLATION_REQUEST, 10, user_id=OTHER_USER)
    assert validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-001"), ctx).is_valid


def test_stricter_cancellable_set(orders, audit, ctx):
    strict = RuleLimits(cancellable_statuses=frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED}))
    validator = ActionValidator(orders, audit, strict)

    assert not validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-007"), ctx).is_valid


def test_every_run_is_audited(validator, ctx, audit_store):
    validator.validate(_intent(ActionKind.STATUS_CHECK, "ORD-2024-002"), ctx)
    validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-2024-003"), ctx)

    records = [r for r in audit_store.records if r.action == AuditAction.VALIDATION_CHECK]
    assert [r.result for r in records] == [AuditResult.SUCCESS, AuditResult.FAILURE]
    assert records[1].details["intent_action"] == "order_cancellation"
    assert records[1].details["risk_score"] == 25
    assert len(records[1].details["checks"]) == 5
    assert "validation_time_ms" in records[1].details


def test_foreign_context_on_status_check(validator):
    stranger = RequestContext(user_id=OTHER_USER, session_id="x")
    result = validator.validate(_intent(ActionKind.STATUS_CHECK, "ORD-2024-002"), stranger)

    assert not result.is_valid
    assert result.risk_score == 100
    assert USER not in " ".join(result.reasons)


@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING])
def test_cancellable_statuses_pass(orders, validator, ctx, status):
    orders.upsert(Order(order_id="ORD-5555-555", owner_id=USER, status=status))
    assert validator.validate(_intent(ActionKind.ORDER_CANCELLATION, "ORD-5555-555"), ctx).is_valid


def test_counts_use_trailing_windows(audit):
    old = AuditRecord(
        user_id=USER,
        session_id="s1",
        action=AuditAction.ORDER_CANCELLATION_REQUEST,
        result=AuditResult.PARTIAL,
        timestamp="2000-01-01T00:00:00Z",
    )
    audit.log_action(old)
    assert audit.count_recent_events({"user_id": USER}, timedelta(hours=24)) == 0
