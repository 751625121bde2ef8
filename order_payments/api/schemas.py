"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from order_payments.channels.flutterwave import UGANDA_PHONE
from order_payments.core.domain import PaymentMethod


class CreateOrderRequest(BaseModel):
    """Checkout request creating a pending order."""

    total: Decimal = Field(..., ge=0, description="Order total")
    currency: str = Field(default="UGX", min_length=3, max_length=3, description="Currency code")
    payment_method: PaymentMethod = Field(
        default=PaymentMethod.COD, description="Payment method chosen at checkout"
    )
    order_id: Optional[str] = Field(
        default=None, max_length=64, description="Explicit order id (generated if omitted)"
    )
    customer_name: Optional[str] = Field(default=None, max_length=255)
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    customer_email: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "total": "120000",
                    "currency": "UGX",
                    "payment_method": "mtn_momo",
                    "customer_phone": "+256772123456",
                    "customer_email": "buyer@example.com",
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """Current state of an order."""

    id: str
    status: str
    total: Decimal
    currency: str
    payment_method: str
    external_reference: Optional[str] = None
    charge_amount: Optional[Decimal] = None
    charge_currency: Optional[str] = None
    payer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    cancellation_reason: Optional[str] = None
    version: int
    created_at: str
    updated_at: str


class TransitionResponse(BaseModel):
    from_status: str
    to_status: str
    event_id: str
    trigger: str
    evidence: Dict[str, Any]
    applied_at: str


class OrderHistoryResponse(BaseModel):
    order_id: str
    status: str
    transitions: List[TransitionResponse]


class TransitionResultResponse(BaseModel):
    """What happened to one event or action."""

    applied: bool
    order_id: str
    event_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    rejection_reason: Optional[str] = None
    duplicate: bool = False


class WebhookResponse(BaseModel):
    """Acknowledgement returned to push channels."""

    status: str = Field(..., description="processed, duplicate or ignored")
    result: Optional[TransitionResultResponse] = None


class MobileMoneyRequest(BaseModel):
    """Start a Flutterwave mobile money charge."""

    phone_number: str = Field(..., description="Customer number (+256XXXXXXXXX)")
    network: Optional[PaymentMethod] = Field(
        default=None, description="mtn_momo or airtel_money (detected from the number if omitted)"
    )
    email: Optional[str] = None
    fullname: Optional[str] = None

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.replace(" ", "")
        if not UGANDA_PHONE.match(v):
            raise ValueError("Invalid Uganda phone number format. Use +256XXXXXXXXX")
        return v

    @field_validator("network")
    @classmethod
    def validate_network(cls, v: Optional[PaymentMethod]) -> Optional[PaymentMethod]:
        if v is not None and v not in (PaymentMethod.MTN_MOMO, PaymentMethod.AIRTEL_MONEY):
            raise ValueError("network must be mtn_momo or airtel_money")
        return v


class PaymentInitiationResponse(BaseModel):
    """Where the customer goes next to complete a digital payment."""

    order_id: str
    payment_method: str
    external_reference: str
    redirect_url: Optional[str] = None
    message: Optional[str] = None
    charge_amount: Optional[Decimal] = Field(
        default=None, description="Amount the gateway charges, in its own currency"
    )
    charge_currency: Optional[str] = None


class PesapalStatusResponse(BaseModel):
    """On-demand poll result: order status and Pesapal's own status."""

    status: str
    pesapal_status: Optional[str] = None
    result: Optional[TransitionResultResponse] = None


class PayPalCaptureRequest(BaseModel):
    paypal_order_id: str = Field(..., min_length=1, description="PayPal order id (the return token)")


class ManualPaymentRequest(BaseModel):
    """Admin form confirming a customer's MoMo transfer."""

    reported_amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    transaction_id: str = Field(..., min_length=1, max_length=128)
    phone_number: Optional[str] = None
    evidence_note: Optional[str] = Field(default=None, max_length=1000)
    approved: bool = True


class ManualMomoSubmission(BaseModel):
    """Customer's own record of a direct MoMo transfer, awaiting verification."""

    transaction_id: str = Field(..., min_length=1, max_length=128)
    phone_number: str = Field(..., description="Number the transfer was sent from (+256XXXXXXXXX)")

    @field_validator("transaction_id")
    @classmethod
    def strip_transaction_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("transaction_id is required")
        return v

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.replace(" ", "")
        if not UGANDA_PHONE.match(v):
            raise ValueError("Invalid Uganda phone number format. Use +256XXXXXXXXX")
        return v


class CashConfirmationRequest(BaseModel):
    """Courier or admin confirmation of cash collected."""

    amount_received: Decimal = Field(..., ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    receipt_number: Optional[str] = Field(default=None, max_length=128)
    notes: Optional[str] = Field(default=None, max_length=1000)


class OrderActionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class RejectionResponse(BaseModel):
    id: int
    order_id: str
    event_id: str
    dedup_key: str
    source_channel: str
    reason: str
    expected_amount: Optional[Decimal] = None
    reported_amount: Optional[Decimal] = None
    reported_currency: Optional[str] = None
    details: Dict[str, Any]
    resolved: bool
    resolution_note: Optional[str] = None
    created_at: str


class ResolveRejectionRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)


class DispatchResponse(BaseModel):
    id: int
    order_id: str
    status: str
    action: str
    state: str
    attempts: int
    last_error: Optional[str] = None
    next_attempt_at: Optional[str] = None


class SweepResponse(BaseModel):
    recovered: int
    processed: int
    backlog: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Optional message")
