import logging
import time
from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph

from app.handlers import HandlerOutcome
from app.models import (
    AuditAction,
    AuditRecord,
    AuditResult,
    ChatResponse,
    ConversationContext,
    RequestContext,
    ResponseMetadata,
    severity_for_risk,
)
from app.services import Services
from llm.prompts import MAX_HISTORY_TURNS
from llm.schemas import ActionKind, StructuredIntent, fallback_intent
from policies.diagnosis import detect_confirmation_reply, detect_fallback_action, detect_product_search
from policies.sanitizer import DEFAULT_MAX_LENGTH, extract_order_ids, sanitize, should_block
from policies.validator import ValidationResult
from tools.cache import ResponseCache

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = (
    "I'm sorry, but I can't process that message. "
    "Please rephrase your question about your order."
)
BLOCKED_REASON = "Message blocked by input screening"

# cancellation outcomes that changed nothing
FAILED_OUTCOME_REASONS = {
    "not_cancellable": "Order already processed",
    "not_found": "Order not found",
    "unavailable": "Order store unavailable",
}


class GraphState(TypedDict, total=False):
    message: str
    request: RequestContext
    started: float
    rate_limit_remaining: Optional[int]

    context: ConversationContext

    sanitized: str
    warnings: List[str]
    input_risk: int
    blocked: bool
    detected_ids: List[str]

    intent: StructuredIntent
    cached: bool
    shortcut: Optional[str]
    synth_error: Optional[str]

    validation: Optional[ValidationResult]
    outcome: HandlerOutcome

    response: ChatResponse


class ChatPipeline:
    """
    One customer message through: intake -> screen -> understand -> validate
    -> act -> finish. Screening and validation can route straight to finish;
    nothing reaches act (and so nothing mutates) without passing validate.
    """

    def __init__(self, services: Services) -> None:
        self.services = services
        self.graph = self._build()

    # -----------------------------
    # nodes
    # -----------------------------
    def intake(self, state: GraphState) -> GraphState:
        req = state["request"]
        state["context"] = self.services.sessions.get_context(req.session_id, req.user_id)
        state.setdefault("cached", False)
        state.setdefault("shortcut", None)
        state.setdefault("synth_error", None)
        state.setdefault("validation", None)
        state.setdefault("blocked", False)
        return state

    def screen(self, state: GraphState) -> GraphState:
        req = state["request"]
        result = sanitize(state.get("message", ""), DEFAULT_MAX_LENGTH)
        state["sanitized"] = result.sanitized_text
        state["warnings"] = result.warnings
        state["input_risk"] = result.risk_score

        if should_block(result.risk_score, self.services.settings.risk_block_threshold):
            state["blocked"] = True
            state["intent"] = fallback_intent(BLOCKED_MESSAGE)
            self.services.audit.log_action(
                AuditRecord(
                    user_id=req.user_id,
                    session_id=req.session_id,
                    action=AuditAction.SECURITY_VIOLATION,
                    result=AuditResult.BLOCKED,
                    severity=severity_for_risk(result.risk_score),
                    details={"risk_score": result.risk_score, "warnings": result.warnings, "stage": "input"},
                    ip_address=req.ip_address,
                )
            )
            logger.warning("blocked message for session %s (risk=%s)", req.session_id, result.risk_score)
            return state

        state["detected_ids"] = extract_order_ids(result.sanitized_text).order_ids
        return state

    def understand(self, state: GraphState) -> GraphState:
        req = state["request"]
        ctx = state["context"]
        text = state["sanitized"]
        ids = state.get("detected_ids") or []
        pending = ctx.pending_cancellation

        reply = detect_confirmation_reply(text) if pending else None
        if reply is not None:
            state["shortcut"] = "confirmation_reply"
            state["intent"] = StructuredIntent(
                action=reply,
                order_id=pending,
                confidence=1.0,
                message="Confirming cancellation" if reply == ActionKind.CONFIRM_CANCELLATION else "Keeping the order",
                requires_confirmation=False,
            )
            return state

        product = detect_product_search(text) if not ids else None
        if product is not None:
            state["shortcut"] = "product_search"
            state["intent"] = StructuredIntent(
                action=product.label,
                product_name=product.product_name,
                confidence=product.confidence,
                message=f"Looking up your {product.product_name} order",
                requires_confirmation=False,
            )
            return state

        key = ResponseCache.key(text, ctx.history, {"user_id": req.user_id})
        intent = self.services.cache.get(key)
        if intent is not None:
            state["cached"] = True
        else:
            intent, error = self.services.synthesizer.synthesize_safe(
                text, ctx.history[-MAX_HISTORY_TURNS:], ids
            )
            state["synth_error"] = error
            if error is None:
                self.services.cache.put(key, intent)

        if intent.action == ActionKind.CLARIFICATION_NEEDED:
            common = detect_fallback_action(text)
            if common is not None:
                intent = intent.model_copy(update={"action": common.label, "confidence": common.confidence})

        if intent.action in {ActionKind.CONFIRM_CANCELLATION, ActionKind.CANCEL_ABORT} and not intent.order_id:
            intent = intent.model_copy(update={"order_id": pending})

        state["intent"] = intent
        return state

    def validate(self, state: GraphState) -> GraphState:
        intent = state["intent"]
        if intent.action == ActionKind.ERROR:
            return state

        req = state["request"]
        result = self.services.validator.validate(intent, req)
        state["validation"] = result
        if not result.is_valid and intent.action == ActionKind.CONFIRM_CANCELLATION:
            self.services.sessions.set_pending_cancellation(req.session_id, req.user_id, None)
        return state

    def act(self, state: GraphState) -> GraphState:
        state["outcome"] = self.services.handlers.handle(state["intent"], state["request"])
        return state

    def finish(self, state: GraphState) -> GraphState:
        req = state["request"]
        intent = state["intent"]
        validation = state.get("validation")
        outcome = state.get("outcome")
        input_risk = state.get("input_risk", 0)
        risk = max(input_risk, validation.risk_score if validation else 0)

        metadata = ResponseMetadata(
            validated=bool(validation and validation.is_valid),
            risk_score=risk,
            cached=state.get("cached", False),
            session_id=req.session_id,
            rate_limit_remaining=state.get("rate_limit_remaining"),
        )

        if state.get("blocked"):
            metadata.validation_reasons = [BLOCKED_REASON]
            response = ChatResponse(action=ActionKind.ERROR.value, confidence=0.0, message=intent.message,
                                    requires_confirmation=False, metadata=metadata)
            result = AuditResult.BLOCKED
        elif validation is not None and not validation.is_valid:
            metadata.validation_reasons = list(validation.reasons)
            response = ChatResponse(
                action=ActionKind.ERROR.value,
                order_id=intent.order_id,
                product_name=intent.product_name,
                confidence=0.0,
                message=validation.first_reason or intent.message,
                requires_confirmation=False,
                metadata=metadata,
            )
            result = AuditResult.FAILURE
        elif outcome is None:
            response = ChatResponse(
                action=intent.action.value,
                confidence=intent.confidence,
                message=intent.message,
                requires_confirmation=False,
                metadata=metadata,
            )
            result = AuditResult.FAILURE if intent.action == ActionKind.ERROR else AuditResult.SUCCESS
        elif outcome.code in FAILED_OUTCOME_REASONS:
            metadata.validated = False
            metadata.validation_reasons = [FAILED_OUTCOME_REASONS[outcome.code]]
            response = ChatResponse(
                action=ActionKind.ERROR.value,
                order_id=outcome.order_id or intent.order_id,
                product_name=intent.product_name,
                confidence=0.0,
                message=outcome.message,
                requires_confirmation=False,
                metadata=metadata,
            )
            result = AuditResult.FAILURE
        else:
            action = outcome.action or intent.action
            if outcome.requires_confirmation is not None:
                confirm = outcome.requires_confirmation
            else:
                confirm = intent.requires_confirmation and action == ActionKind.ORDER_CANCELLATION
            response = ChatResponse(
                action=action.value,
                order_id=outcome.order_id or intent.order_id,
                product_name=intent.product_name,
                confidence=intent.confidence,
                message=outcome.message,
                requires_confirmation=confirm,
                metadata=metadata,
            )
            result = AuditResult.SUCCESS

        elapsed = int((time.perf_counter() - state.get("started", time.perf_counter())) * 1000)
        response.metadata.total_response_time_ms = elapsed
        state["response"] = response

        self._remember(state, response)
        self.services.audit.log_action(
            AuditRecord(
                user_id=req.user_id,
                session_id=req.session_id,
                action=AuditAction.AI_RESPONSE_GENERATED,
                order_id=response.order_id,
                result=result,
                severity=severity_for_risk(risk),
                details={
                    "intent_action": intent.action.value,
                    "response_action": response.action,
                    "confidence": intent.confidence,
                    "cached": response.metadata.cached,
                    "shortcut": state.get("shortcut"),
                    "outcome_code": outcome.code if outcome else None,
                    "synth_error": state.get("synth_error"),
                    "input_warnings": state.get("warnings", []),
                    "risk_score": risk,
                    "response_time_ms": elapsed,
                },
                ip_address=req.ip_address,
            )
        )
        return state

    def _remember(self, state: GraphState, response: ChatResponse) -> None:
        req = state["request"]
        sessions = self.services.sessions
        user_text = "[blocked message]" if state.get("blocked") else state.get("sanitized", "")
        sessions.add_message(req.session_id, req.user_id, "user", user_text)
        sessions.add_message(
            req.session_id,
            req.user_id,
            "assistant",
            response.message,
            {
                "action": response.action,
                "order_id": response.order_id,
                "validated": response.metadata.validated,
            },
        )

    # -----------------------------
    # routing
    # -----------------------------
    @staticmethod
    def _after_screen(state: GraphState) -> str:
        return "finish" if state.get("blocked") else "understand"

    @staticmethod
    def _after_validate(state: GraphState) -> str:
        validation = state.get("validation")
        if state["intent"].action == ActionKind.ERROR:
            return "finish"
        if validation is None or not validation.is_valid:
            return "finish"
        return "act"

    def _build(self):
        g = StateGraph(GraphState)

        g.add_node("intake", self.intake)
        g.add_node("screen", self.screen)
        g.add_node("understand", self.understand)
        g.add_node("validate", self.validate)
        g.add_node("act", self.act)
        g.add_node("finish", self.finish)

        g.set_entry_point("intake")
        g.add_edge("intake", "screen")
        g.add_conditional_edges("screen", self._after_screen, {"understand": "understand", "finish": "finish"})
        g.add_edge("understand", "validate")
        g.add_conditional_edges("validate", self._after_validate, {"act": "act", "finish": "finish"})
        g.add_edge("act", "finish")
        g.add_edge("finish", END)

        return g.compile()

    # -----------------------------
    # entry point
    # -----------------------------
    def run(
        self,
        message: str,
        user_id: str,
        session_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        rate_limit_remaining: Optional[int] = None,
    ) -> ChatResponse:
        state: Dict[str, Any] = {
            "message": message,
            "request": RequestContext(
                user_id=user_id,
                session_id=session_id,
                ip_address=ip_address,
                user_agent=user_agent,
            ),
            "started": time.perf_counter(),
            "rate_limit_remaining": rate_limit_remaining,
        }
        out = self.graph.invoke(state)
        return out["response"]


def build_graph(services: Services) -> ChatPipeline:
    return ChatPipeline(services)
