from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from llm.schemas import ActionKind
from policies.sanitizer import extract_order_ids


@dataclass
class Diagnosis:
    label: ActionKind
    confidence: float
    notes: str = ""
    product_name: Optional[str] = None


CONFIRM_PHRASES = ["yes", "confirm", "proceed", "go ahead"]
ABORT_PHRASES = ["cancel_abort", "no", "nope", "keep order", "keep my order", "don't cancel", "dont cancel"]
CANCEL_KEYWORDS = ["cancel", "cancellation", "stop", "abort", "terminate"]
REFUND_KEYWORDS = ["refund", "money back", "return money"]
TRACK_KEYWORDS = ["track", "tracking", "where is", "location", "shipment"]
SPECIFIC_TRACK_PHRASES = ["tracking details for order", "show tracking details"]
LIST_KEYWORDS = ["order status", "my orders", "show orders", "list orders", "all orders"]
STATUS_KEYWORDS = ["status", "progress"]

SHORT_STATUS_CHARS = 15

_CONFIRM_REPLY = re.compile(r"^(yes|yeah|yep|y|confirm|ok|okay|sure|proceed|do it|go ahead)[.!]*$", re.IGNORECASE)
_DENY_REPLY = re.compile(r"^(no|nope|n|cancel|abort|stop|never mind|nevermind|keep it)[.!]*$", re.IGNORECASE)

_TRACK_FALLBACK = [
    re.compile(r"^track\s?(my)?\s?orders?$", re.IGNORECASE),
    re.compile(r"^tra[ck]{1,2}\s?orders?$", re.IGNORECASE),
    re.compile(r"^track$", re.IGNORECASE),
    re.compile(r"^where\s+is\s+my\s+order\??$", re.IGNORECASE),
]
_LIST_FALLBACK = [
    re.compile(r"^o?r?ders?\s?status$", re.IGNORECASE),
    re.compile(r"^status$", re.IGNORECASE),
    re.compile(r"^check\s?(my)?\s?orders?$", re.IGNORECASE),
    re.compile(r"^show\s?(my)?\s?orders?$", re.IGNORECASE),
    re.compile(r"^list\s?(my)?\s?orders?$", re.IGNORECASE),
]

_PRODUCT_PATTERNS = [
    re.compile(r"status\s+of\s+(?:my\s+)?(.+)", re.IGNORECASE),
    re.compile(r"status\s+for\s+(?:my\s+)?(.+)", re.IGNORECASE),
    re.compile(r"where\s+is\s+my\s+(.+)", re.IGNORECASE),
    re.compile(r"(.+?)\s+order\s+status", re.IGNORECASE),
]
_PRODUCT_FILLER = re.compile(
    r"\b(my|the|a|an|order|orders|status|for|of|is|what's|whats|what|check|show|please|current|new"
    r"|package|parcel|delivery|shipment|stuff|items?|it|refund)\b",
    re.IGNORECASE,
)

# audio products are the ones customers most often describe loosely
PRODUCT_SYNONYMS = {
    "bluetooth": ["wireless headphones", "wireless earphones", "earbuds"],
    "wireless": ["bluetooth headphones", "bluetooth earphones", "earbuds"],
    "headphones": ["headphones", "earphones", "earbuds", "headset"],
    "earphones": ["headphones", "earphones", "earbuds", "headset"],
}


def _has_phrase(text: str, phrases: List[str]) -> bool:
    """Whole-word match so "no" does not fire on "know" or "now"."""
    for p in phrases:
        if re.search(r"(?<![a-z0-9_])" + re.escape(p) + r"(?![a-z0-9])", text):
            return True
    return False


def detect_intent(message: str) -> ActionKind:
    """
    Rule-based guess of the likely action. Only used to pick worked examples
    for the prompt; the model still makes the call.
    """
    text = (message or "").lower().strip()

    if "confirm_cancel_" in text or _has_phrase(text, CONFIRM_PHRASES):
        return ActionKind.CONFIRM_CANCELLATION

    if _has_phrase(text, ABORT_PHRASES):
        return ActionKind.CANCEL_ABORT

    if _has_phrase(text, CANCEL_KEYWORDS):
        if extract_order_ids(message).order_ids:
            return ActionKind.ORDER_CANCELLATION
        return ActionKind.CANCEL_ORDERS

    if _has_phrase(text, REFUND_KEYWORDS):
        return ActionKind.REFUND_STATUS

    if any(k in text for k in TRACK_KEYWORDS):
        if any(p in text for p in SPECIFIC_TRACK_PHRASES) or extract_order_ids(message).order_ids:
            return ActionKind.TRACK_SPECIFIC_ORDER
        return ActionKind.TRACK_ORDER

    if any(k in text for k in LIST_KEYWORDS):
        return ActionKind.LIST_ORDERS

    if any(k in text for k in STATUS_KEYWORDS):
        if len(text) < SHORT_STATUS_CHARS:
            return ActionKind.LIST_ORDERS
        return ActionKind.STATUS_CHECK

    return ActionKind.GENERAL_INQUIRY


def detect_confirmation_reply(message: str) -> Optional[ActionKind]:
    """A bare yes/no answer to a pending cancellation prompt."""
    text = (message or "").strip()
    if _CONFIRM_REPLY.match(text):
        return ActionKind.CONFIRM_CANCELLATION
    if _DENY_REPLY.match(text):
        return ActionKind.CANCEL_ABORT
    return None


def detect_fallback_action(message: str) -> Optional[Diagnosis]:
    """Short, common requests that never need a clarifying question."""
    text = (message or "").strip()
    if any(p.match(text) for p in _TRACK_FALLBACK):
        return Diagnosis(ActionKind.TRACK_ORDER, 0.95, "common tracking phrase")
    if any(p.match(text) for p in _LIST_FALLBACK):
        return Diagnosis(ActionKind.LIST_ORDERS, 0.95, "common order-list phrase")
    return None


def detect_product_search(message: str) -> Optional[Diagnosis]:
    """
    "status of my wireless headphones" style questions that name a product
    instead of an order id.
    """
    text = (message or "").strip()
    if not text or extract_order_ids(text).order_ids:
        return None

    for pattern in _PRODUCT_PATTERNS:
        m = pattern.search(text)
        if not m:
            continue
        name = _PRODUCT_FILLER.sub(" ", m.group(1))
        name = re.sub(r"[^\w\s-]", " ", name)
        name = re.sub(r"\s+", " ", name).strip()
        if len(name) > 2 and not name.isdigit() and not name.lower().startswith("ord-"):
            return Diagnosis(ActionKind.STATUS_CHECK, 0.85, "product named instead of order id", product_name=name)
    return None


def product_search_terms(product_name: str) -> List[str]:
    name = (product_name or "").lower().strip()
    terms = [name] if name else []
    for key, extra in PRODUCT_SYNONYMS.items():
        if key in name:
            if key in {"bluetooth", "wireless"}:
                swapped = name.replace(key, "wireless" if key == "bluetooth" else "bluetooth")
                if swapped not in terms:
                    terms.append(swapped)
            for t in extra:
                if t not in terms:
                    terms.append(t)
    return terms
