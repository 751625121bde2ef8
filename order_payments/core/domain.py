"""
Domain vocabulary shared by the ledger, adapters, guard, engine and dispatcher.

Order statuses form a forward-only graph:

    pending -> paid -> shipped -> delivered
    pending -> cancelled
    paid    -> cancelled
"""
import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatus(str, Enum):
    """Settlement state of an order."""

    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """Which channel is authoritative for an order."""

    COD = "cod"
    MTN_MOMO = "mtn_momo"
    AIRTEL_MONEY = "airtel_money"
    PAYPAL = "paypal"
    PESAPAL = "pesapal"
    MANUAL_MOMO = "manual_momo"


class PaymentOutcome(str, Enum):
    """What the channel says happened to the settlement."""

    SUCCESSFUL = "successful"
    FAILED = "failed"
    PENDING = "pending"


class SourceChannel(str, Enum):
    """Kind of adapter that produced an event."""

    PUSH_WEBHOOK = "push_webhook"
    POLL_STATUS = "poll_status"
    REDIRECT_CAPTURE = "redirect_capture"
    MANUAL_ENTRY = "manual_entry"
    CASH_CONFIRM = "cash_confirm"


class RejectionReason(str, Enum):
    """Why an admitted event did not change the order."""

    ALREADY_TERMINAL = "already-terminal"
    AMOUNT_MISMATCH = "amount-mismatch"
    REFERENCE_CONFLICT = "reference-conflict"
    METHOD_MISMATCH = "method-mismatch"
    INVALID_TRANSITION = "invalid-transition"
    ORDER_NOT_FOUND = "order-not-found"


class OrderAction(str, Enum):
    """Operational actions that move an order without a payment event."""

    SHIP = "ship"
    DELIVER = "deliver"
    CANCEL = "cancel"


TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ACTION_TARGETS: Mapping[OrderAction, OrderStatus] = {
    OrderAction.SHIP: OrderStatus.SHIPPED,
    OrderAction.DELIVER: OrderStatus.DELIVERED,
    OrderAction.CANCEL: OrderStatus.CANCELLED,
}

# Channels whose human-asserted amount must match the order's own method.
CHANNEL_REQUIRED_METHOD: Mapping[SourceChannel, PaymentMethod] = {
    SourceChannel.CASH_CONFIRM: PaymentMethod.COD,
    SourceChannel.MANUAL_ENTRY: PaymentMethod.MANUAL_MOMO,
}

# Orders with these methods are settled only by a human assertion.
HUMAN_ASSERTED_METHODS: FrozenSet[PaymentMethod] = frozenset(CHANNEL_REQUIRED_METHOD.values())


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the status graph."""
    return target in ALLOWED_TRANSITIONS[current]


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def content_hash(*parts: Any, length: int = 16) -> str:
    """Stable short hash of the given parts, used for derived dedup keys."""
    joined = "|".join(str(p) for p in parts)
    return hashlib.sha256(joined.encode()).hexdigest()[:length]


class PaymentEvent(BaseModel):
    """
    A normalized settlement notification.

    Produced by exactly one channel adapter and consumed by the idempotency
    guard and the reconciliation engine. ``received_at`` is the adapter's own
    clock, never the gateway's.
    """

    model_config = ConfigDict(frozen=True)

    dedup_key: str = Field(..., min_length=1, max_length=255)
    order_ref: str = Field(..., min_length=1, max_length=64)
    reported_amount: Decimal
    reported_currency: str = Field(..., min_length=3, max_length=3)
    outcome: PaymentOutcome
    source_channel: SourceChannel
    payment_method: PaymentMethod
    external_reference: Optional[str] = Field(default=None, max_length=255)
    received_at: datetime = Field(default_factory=utcnow)
    evidence: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("reported_currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def event_id(self) -> str:
        """Identifier recorded in transition history for this event."""
        return f"evt_{content_hash(self.dedup_key, length=24)}"


class AdmissionResult(BaseModel):
    """Outcome of the idempotency guard for one event."""

    admitted: bool
    reason: Optional[str] = None


class TransitionResult(BaseModel):
    """What the reconciliation engine did with one event or action."""

    applied: bool
    order_id: str
    event_id: Optional[str] = None
    previous_status: Optional[OrderStatus] = None
    new_status: Optional[OrderStatus] = None
    rejection_reason: Optional[RejectionReason] = None
    duplicate: bool = False

    @property
    def rejected(self) -> bool:
        return self.rejection_reason is not None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "order_id": self.order_id,
            "event_id": self.event_id,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value if self.new_status else None,
            "rejection_reason": (
                self.rejection_reason.value if self.rejection_reason else None
            ),
            "duplicate": self.duplicate,
        }
