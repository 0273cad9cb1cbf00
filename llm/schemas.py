import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ActionKind(str, Enum):
    ORDER_CANCELLATION = "order_cancellation"
    CONFIRM_CANCELLATION = "confirm_cancellation"
    CANCEL_ABORT = "cancel_abort"
    CANCEL_ORDERS = "cancel_orders"
    STATUS_CHECK = "status_check"
    LIST_ORDERS = "list_orders"
    REFUND_STATUS = "refund_status"
    TRACK_ORDER = "track_order"
    TRACK_SPECIFIC_ORDER = "track_specific_order"
    GENERAL_INQUIRY = "general_inquiry"
    CLARIFICATION_NEEDED = "clarification_needed"
    ERROR = "error"


CANCELLATION_ACTIONS = frozenset({ActionKind.ORDER_CANCELLATION, ActionKind.CONFIRM_CANCELLATION})

# normalized order id shape: letters, digits and dashes
ORDER_ID_SHAPE = re.compile(r"^[A-Z0-9-]{3,20}$")

FALLBACK_MESSAGE = (
    "I apologize, but I encountered an issue processing your request. "
    "Please try again or contact support."
)


class StructuredIntent(BaseModel):
    """
    What the customer wants, as understood from one message.
    Immutable once built; later stages derive new instances with model_copy().
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    action: ActionKind
    order_id: Optional[str] = None
    product_name: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    message: str
    requires_confirmation: bool = True


def normalize_order_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip().upper()
    return cleaned or None


def fallback_intent(message: str = FALLBACK_MESSAGE) -> StructuredIntent:
    return StructuredIntent(
        action=ActionKind.ERROR,
        order_id=None,
        product_name=None,
        confidence=0.0,
        message=message,
        requires_confirmation=False,
    )
