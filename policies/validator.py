from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from app.models import (
    AuditAction,
    AuditResult,
    AuditSeverity,
    AuditRecord,
    RequestContext,
    severity_for_risk,
)
from llm.schemas import CANCELLATION_ACTIONS, StructuredIntent
from policies.rules import (
    ORDER_RULES,
    RULE_ERROR_WEIGHT,
    RULES,
    RuleLimits,
    ValidationCheck,
    ValidationSnapshot,
    rules_for,
)
from tools.logs import AuditLogger
from tools.orders import OrderStore, OrderStoreUnavailable

logger = logging.getLogger(__name__)

MAX_RISK = 100

LOW_CONFIDENCE = 0.5
LOW_CONFIDENCE_RISK = 20
AUTOMATION_EVENTS_PER_MIN = 10
AUTOMATION_RISK = 25
SUSPICIOUS_ID_RISK = 15

SUSPICIOUS_ORDER_IDS = [
    re.compile(r"^(test|demo|sample)", re.IGNORECASE),
    re.compile(r"^(123|000|999)"),
    re.compile(r"^[a-z]+$", re.IGNORECASE),
]


@dataclass
class ValidationResult:
    is_valid: bool
    risk_score: int
    checks: List[ValidationCheck] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    rules_applied: List[str] = field(default_factory=list)
    validation_time_ms: int = 0

    @property
    def first_reason(self) -> Optional[str]:
        return self.reasons[0] if self.reasons else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "risk_score": self.risk_score,
            "checks": [c.to_dict() for c in self.checks],
            "reasons": list(self.reasons),
            "recommendations": list(self.recommendations),
            "rules_applied": list(self.rules_applied),
            "validation_time_ms": self.validation_time_ms,
        }


class ActionValidator:
    """
    The gate every intent passes before anything is read for, or done to,
    a specific order.

    All rules for the action run, in table order, even after a failure.
    Order-dependent rules fail closed when the order store is down;
    activity counters fail open (they come from the audit logger).
    """

    def __init__(
        self,
        orders: OrderStore,
        audit: AuditLogger,
        limits: Optional[RuleLimits] = None,
    ) -> None:
        self._orders = orders
        self._audit = audit
        self._limits = limits or RuleLimits()

    # -----------------------------
    # snapshot
    # -----------------------------
    def _snapshot(self, intent: StructuredIntent, ctx: RequestContext, rule_names: Sequence[str]) -> ValidationSnapshot:
        order = None
        order_error = None
        if intent.order_id and ORDER_RULES.intersection(rule_names):
            try:
                order = self._orders.find_by_order_id(intent.order_id)
            except OrderStoreUnavailable as exc:
                logger.warning("order store unavailable during validation: %s", exc)
                order_error = str(exc)
            except Exception as exc:
                # a document that does not parse fails the order rules like an outage
                logger.exception("order lookup failed during validation")
                order_error = f"{type(exc).__name__}: {exc}"

        recent_cancellations = 0
        if "noRecentCancellations" in rule_names:
            recent_cancellations = self._audit.count_recent_events(
                {"user_id": ctx.user_id, "action": AuditAction.ORDER_CANCELLATION_REQUEST},
                timedelta(hours=24),
            )

        recent_requests = 0
        if "rateLimitCheck" in rule_names:
            recent_requests = self._audit.count_recent_events({"user_id": ctx.user_id}, timedelta(minutes=5))

        return ValidationSnapshot(
            order=order,
            order_error=order_error,
            recent_cancellations=recent_cancellations,
            recent_requests=recent_requests,
            limits=self._limits,
        )

    # -----------------------------
    # supplemental risk
    # -----------------------------
    def _supplemental_risk(self, intent: StructuredIntent, ctx: RequestContext) -> List[tuple]:
        extra = []
        if intent.action in CANCELLATION_ACTIONS and intent.confidence < LOW_CONFIDENCE:
            extra.append((LOW_CONFIDENCE_RISK, "Low AI confidence - manual review recommended"))

        recent = self._audit.count_recent_events(
            {"user_id": ctx.user_id, "session_id": ctx.session_id}, timedelta(minutes=1)
        )
        if recent > AUTOMATION_EVENTS_PER_MIN:
            extra.append((AUTOMATION_RISK, "High activity detected - potential automation"))

        if intent.order_id and any(p.search(intent.order_id) for p in SUSPICIOUS_ORDER_IDS):
            extra.append((SUSPICIOUS_ID_RISK, "Suspicious order ID pattern detected"))
        return extra

    # -----------------------------
    # entry point
    # -----------------------------
    def validate(self, intent: StructuredIntent, ctx: RequestContext) -> ValidationResult:
        started = time.perf_counter()
        rule_names = rules_for(intent)
        snapshot = self._snapshot(intent, ctx, rule_names)

        checks: List[ValidationCheck] = []
        for name in rule_names:
            rule = RULES[name]
            try:
                check = rule(intent, ctx, snapshot)
            except Exception as exc:
                logger.exception("validation rule %s raised", name)
                check = ValidationCheck(name, False, str(exc) or type(exc).__name__, {"exception": repr(exc)},
                                        RULE_ERROR_WEIGHT)
            checks.append(check)

        failed = [c for c in checks if not c.passed]
        risk = sum(c.risk_weight for c in failed)
        recommendations = [c.recommendation for c in failed if c.recommendation]

        for weight, note in self._supplemental_risk(intent, ctx):
            risk += weight
            recommendations.append(note)

        result = ValidationResult(
            is_valid=not failed,
            risk_score=max(0, min(MAX_RISK, risk)),
            checks=checks,
            reasons=[c.reason for c in failed],
            recommendations=recommendations,
            rules_applied=list(rule_names),
            validation_time_ms=int((time.perf_counter() - started) * 1000),
        )
        self._record(intent, ctx, result)
        return result

    def _record(self, intent: StructuredIntent, ctx: RequestContext, result: ValidationResult) -> None:
        details = {
            "intent_action": intent.action.value,
            "confidence": intent.confidence,
            **result.to_dict(),
        }
        self._audit.log_action(
            AuditRecord(
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                action=AuditAction.VALIDATION_CHECK,
                order_id=intent.order_id,
                result=AuditResult.SUCCESS if result.is_valid else AuditResult.FAILURE,
                severity=severity_for_risk(result.risk_score),
                details=details,
                ip_address=ctx.ip_address,
            )
        )

        ownership = next((c for c in result.checks if c.name == "orderBelongsToUser" and not c.passed
                          and c.details.get("owner_mismatch")), None)
        if ownership is not None:
            self._audit.log_action(
                AuditRecord(
                    user_id=ctx.user_id,
                    session_id=ctx.session_id,
                    action=AuditAction.SECURITY_VIOLATION,
                    order_id=intent.order_id,
                    result=AuditResult.BLOCKED,
                    severity=AuditSeverity.CRITICAL,
                    details={"reason": "order_ownership_mismatch", "intent_action": intent.action.value},
                    ip_address=ctx.ip_address,
                )
            )
