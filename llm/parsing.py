import json
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from llm.errors import IntentParseError, IntentValidationError
from llm.schemas import (
    ActionKind,
    CANCELLATION_ACTIONS,
    ORDER_ID_SHAPE,
    StructuredIntent,
    normalize_order_id,
)


@dataclass(frozen=True)
class ParseStrategy:
    name: str
    extract: Callable[[str], Optional[str]]


def _whole_text(raw: str) -> Optional[str]:
    return raw.strip() or None


def _json_fence(raw: str) -> Optional[str]:
    m = re.search(r"```json\s*(.*?)\s*```", raw, flags=re.IGNORECASE | re.DOTALL)
    return m.group(1) if m else None


def _generic_fence(raw: str) -> Optional[str]:
    m = re.search(r"```[a-zA-Z]*\s*(.*?)\s*```", raw, flags=re.DOTALL)
    return m.group(1) if m else None


def _embedded_object(raw: str) -> Optional[str]:
    # models that add chatter around the object
    m = re.search(r"\{.*\}", raw, flags=re.DOTALL)
    return m.group(0) if m else None


PARSE_STRATEGIES: Tuple[ParseStrategy, ...] = (
    ParseStrategy("whole_text", _whole_text),
    ParseStrategy("json_fence", _json_fence),
    ParseStrategy("generic_fence", _generic_fence),
    ParseStrategy("embedded_object", _embedded_object),
)


def parse_model_output(
    raw: str, strategies: Sequence[ParseStrategy] = PARSE_STRATEGIES
) -> Tuple[str, Dict[str, Any]]:
    """
    Try each strategy in order; the first one that yields a JSON object wins.
    Returns (strategy_name, payload).
    """
    if not raw or not raw.strip():
        raise IntentParseError("Empty model response")

    for strategy in strategies:
        candidate = strategy.extract(raw)
        if candidate is None:
            continue
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return strategy.name, payload

    raise IntentParseError("No JSON object found in model response")


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in payload:
            return payload[k]
    return None


def _clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.5
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 0.5
    if math.isnan(conf):
        return 0.5
    return max(0.0, min(1.0, conf))


def validate_intent_payload(payload: Dict[str, Any]) -> StructuredIntent:
    """
    Turn a parsed JSON object into a StructuredIntent.

    Hard errors: unknown action, missing message, malformed order id.
    Soft defaults: confidence 0.5, requiresConfirmation true, ids null.
    """
    action_raw = payload.get("action")
    try:
        action = ActionKind(str(action_raw).strip().lower()) if action_raw is not None else None
    except ValueError:
        action = None
    if action is None:
        raise IntentValidationError(f"Invalid action: {action_raw!r}")

    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise IntentValidationError("Response message is missing")

    order_id_raw = _first(payload, "orderId", "order_id")
    order_id = normalize_order_id(order_id_raw) if order_id_raw not in (None, "", "null") else None
    if order_id is not None and not ORDER_ID_SHAPE.match(order_id):
        raise IntentValidationError("Order ID format is invalid")

    product_raw = _first(payload, "productName", "product_name")
    product_name = str(product_raw).strip() if product_raw not in (None, "", "null") else None

    confirm_raw = _first(payload, "requiresConfirmation", "requires_confirmation")

    return StructuredIntent(
        action=action,
        order_id=order_id,
        product_name=product_name or None,
        confidence=_clamp_confidence(payload.get("confidence")),
        message=message.strip(),
        requires_confirmation=confirm_raw is not False,
    )


MIN_MESSAGE_CHARS = 10
MIN_CANCELLATION_CONFIDENCE = 0.3


def check_consistency(intent: StructuredIntent, detected_order_ids: List[str]) -> None:
    """
    Reject intents that are well-formed but do not hang together.
    Raises IntentValidationError.
    """
    if intent.action == ActionKind.ORDER_CANCELLATION and not intent.order_id:
        raise IntentValidationError("Order cancellation requires an orderId")

    if intent.action == ActionKind.STATUS_CHECK and not intent.order_id and not intent.product_name:
        raise IntentValidationError("Status check requires an orderId or productName")

    if intent.action in CANCELLATION_ACTIONS and intent.confidence < MIN_CANCELLATION_CONFIDENCE:
        raise IntentValidationError("Confidence too low for order cancellation")

    if len(intent.message) < MIN_MESSAGE_CHARS:
        raise IntentValidationError("Response message is too short")

    # an id the customer never typed is a hallucination
    if intent.order_id and detected_order_ids and intent.order_id not in detected_order_ids:
        raise IntentValidationError(f"Order ID {intent.order_id} was not mentioned in the message")
