"""
Pydantic schemas for channel payloads and gateway responses.

Only the fields the adapters rely on are declared; everything else a gateway
sends is ignored.
"""
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _GatewayModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# Flutterwave


class FlutterwaveCustomer(_GatewayModel):
    phone_number: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class FlutterwaveChargeData(_GatewayModel):
    id: Union[int, str]
    tx_ref: str = Field(..., min_length=1)
    flw_ref: Optional[str] = None
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    status: str = Field(..., min_length=1)
    network: Optional[str] = None
    payment_type: Optional[str] = None
    customer: Optional[FlutterwaveCustomer] = None


class FlutterwaveWebhookPayload(_GatewayModel):
    event: str
    data: FlutterwaveChargeData


class FlutterwaveEnvelope(_GatewayModel):
    """Wrapper every Flutterwave API response uses."""

    status: str
    message: Optional[str] = None
    data: Optional[Any] = None
    meta: Optional[Any] = None


# Pesapal


class PesapalToken(_GatewayModel):
    token: str = Field(..., min_length=1)
    expiry_date: Optional[str] = Field(default=None, alias="expiryDate")


class PesapalIpnRegistration(_GatewayModel):
    ipn_id: str = Field(..., min_length=1)
    url: Optional[str] = None


class PesapalSubmitOrderResponse(_GatewayModel):
    order_tracking_id: str = Field(..., min_length=1)
    merchant_reference: str
    redirect_url: str


class PesapalTransactionStatus(_GatewayModel):
    status_code: Optional[int] = None
    payment_status_description: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    merchant_reference: Optional[str] = None
    confirmation_code: Optional[str] = None
    payment_method: Optional[str] = None
    payment_account: Optional[str] = None
    description: Optional[str] = None
    created_date: Optional[str] = None


class PesapalIpnNotification(_GatewayModel):
    order_tracking_id: str = Field(..., min_length=1, alias="OrderTrackingId")
    order_merchant_reference: str = Field(..., min_length=1, alias="OrderMerchantReference")
    order_notification_type: Optional[str] = Field(default=None, alias="OrderNotificationType")


# PayPal


class PayPalAmount(_GatewayModel):
    currency_code: str
    value: Decimal


class PayPalCapture(_GatewayModel):
    id: str
    status: str
    amount: PayPalAmount


class PayPalPayments(_GatewayModel):
    captures: List[PayPalCapture] = Field(default_factory=list)


class PayPalPurchaseUnit(_GatewayModel):
    reference_id: Optional[str] = None
    amount: Optional[PayPalAmount] = None
    payments: Optional[PayPalPayments] = None


class PayPalLink(_GatewayModel):
    href: str
    rel: str
    method: Optional[str] = None


class PayPalOrder(_GatewayModel):
    id: str
    status: str
    purchase_units: List[PayPalPurchaseUnit] = Field(default_factory=list)
    links: List[PayPalLink] = Field(default_factory=list)

    @property
    def approve_url(self) -> Optional[str]:
        for link in self.links:
            if link.rel in ("approve", "payer-action"):
                return link.href
        return None


class PayPalToken(_GatewayModel):
    access_token: str
    expires_in: int = 0


# Human-asserted channels


class ManualMomoConfirmation(BaseModel):
    """Admin confirmation of a customer-reported mobile money transfer."""

    order_ref: str = Field(..., min_length=1)
    reported_amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    transaction_id: str = Field(..., min_length=1, max_length=128)
    phone_number: Optional[str] = None
    evidence_note: Optional[str] = Field(default=None, max_length=1000)
    verified_by: str = Field(..., min_length=1)
    approved: bool = True

    @field_validator("transaction_id")
    @classmethod
    def strip_transaction_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("transaction_id must not be blank")
        return v


class CashConfirmation(BaseModel):
    """Courier or admin confirmation that cash was collected on delivery."""

    order_ref: str = Field(..., min_length=1)
    amount_received: Decimal = Field(..., ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    confirmed_by: str = Field(..., min_length=1)
    receipt_number: Optional[str] = Field(default=None, max_length=128)
    notes: Optional[str] = Field(default=None, max_length=1000)
