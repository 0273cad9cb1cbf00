# app/models.py

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(ts: Optional[str]) -> Optional[datetime]:
    """Parse ISO timestamps as stored in Firestore ("...Z" suffix)."""
    if not ts:
        return None
    ts = ts.replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class CamelModel(BaseModel):
    # wire format is camelCase, python attributes stay snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------------
# Orders
# -----------------------------
class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    RETURNED = "returned"


CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})
FINAL_STATUSES = frozenset(
    {
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
        OrderStatus.RETURNED,
    }
)


class OrderItem(CamelModel):
    name: str
    quantity: int = 1
    price: float = 0.0


class TrackingEvent(BaseModel):
    ts: str
    status: str
    location: Optional[str] = None
    description: Optional[str] = None


class Shipment(BaseModel):
    tracking_id: str
    carrier: str
    current_status: str
    current_location: Optional[str] = None
    estimated_delivery: Optional[str] = None
    timeline: List[TrackingEvent] = Field(default_factory=list)


class Order(CamelModel):
    order_id: str
    owner_id: str
    status: OrderStatus
    total_amount: float = 0.0
    items: List[OrderItem] = Field(default_factory=list)
    order_date: Optional[str] = None
    estimated_delivery: Optional[str] = None
    tracking_number: Optional[str] = None
    current_location: Optional[str] = None
    payment_status: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    tracking: List[TrackingEvent] = Field(default_factory=list)

    @property
    def cancellation_eligible(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    @property
    def item_names(self) -> str:
        return ", ".join(i.name for i in self.items) or "your items"


# -----------------------------
# Audit trail
# -----------------------------
class AuditAction(str, Enum):
    ORDER_CANCELLATION_REQUEST = "order_cancellation_request"
    ORDER_CANCELLATION_APPROVED = "order_cancellation_approved"
    ORDER_CANCELLATION_DENIED = "order_cancellation_denied"
    ORDER_STATUS_CHECK = "order_status_check"
    AI_RESPONSE_GENERATED = "ai_response_generated"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    VALIDATION_FAILED = "validation_failed"
    VALIDATION_CHECK = "validation_check"
    SECURITY_VIOLATION = "security_violation"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    BLOCKED = "blocked"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


AUDIT_RETENTION_DAYS = 90


class AuditRecord(BaseModel):
    """
    One append-only audit entry. Stored in Firestore collection: action_logs
    """
    user_id: str
    session_id: str
    action: AuditAction
    result: AuditResult
    severity: AuditSeverity = AuditSeverity.INFO
    order_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: str = Field(default_factory=now_iso)


def severity_for_risk(risk_score: int) -> AuditSeverity:
    if risk_score > 75:
        return AuditSeverity.CRITICAL
    if risk_score > 50:
        return AuditSeverity.ERROR
    if risk_score > 25:
        return AuditSeverity.WARNING
    return AuditSeverity.INFO


# -----------------------------
# Conversation
# -----------------------------
class ConversationTurn(BaseModel):
    role: str  # user | assistant
    content: str
    ts: str = Field(default_factory=now_iso)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationContext(BaseModel):
    user_id: str
    session_id: str
    history: List[ConversationTurn] = Field(default_factory=list)
    pending_cancellation: Optional[str] = None
    last_order_inquiry: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    last_seen: str = Field(default_factory=now_iso)


class RequestContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    session_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# -----------------------------
# HTTP envelopes
# -----------------------------
MAX_MESSAGE_CHARS = 1000


class ChatRequest(CamelModel):
    # presence and length are checked by the endpoint so failures map to 400
    message: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None


class ResponseMetadata(CamelModel):
    validated: bool = False
    risk_score: int = 0
    cached: bool = False
    total_response_time_ms: int = Field(default=0, alias="totalResponseTime_ms")
    validation_reasons: Optional[List[str]] = None
    session_id: Optional[str] = None
    rate_limit_remaining: Optional[int] = None
    timestamp: str = Field(default_factory=now_iso)


class ChatResponse(CamelModel):
    action: str
    order_id: Optional[str] = None
    product_name: Optional[str] = None
    confidence: float = 0.0
    message: str
    requires_confirmation: bool = False
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


class CancelOrderRequest(CamelModel):
    user_id: str
    session_id: str = "direct"
    reason: Optional[str] = None
