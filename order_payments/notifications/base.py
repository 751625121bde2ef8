"""Shared notification errors and formatting helpers."""
from decimal import Decimal
from typing import Any, Dict, Optional


class NotificationError(Exception):
    """Base exception for outbound notifications."""

    def __init__(
        self,
        message: str,
        recipient: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.recipient = recipient
        self.details = details or {}


class InvalidPhoneNumberError(NotificationError):
    """Raised when a number does not match the configured region's format."""

    pass


class DeliveryError(NotificationError):
    """Raised when the provider refuses or cannot be reached."""

    pass


PAYMENT_METHOD_LABELS = {
    "cod": "Cash on Delivery",
    "mtn_momo": "MTN Mobile Money",
    "airtel_money": "Airtel Money",
    "paypal": "PayPal",
    "pesapal": "Pesapal",
    "manual_momo": "Mobile Money",
}


def order_number(order_id: str) -> str:
    """Customer-facing order number: ``ORD-`` plus the last 8 id characters."""
    return f"ORD-{order_id[-8:].upper()}"


def format_amount(amount: Decimal) -> str:
    """Thousands-separated amount without trailing zero cents."""
    if amount == amount.to_integral_value():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


def method_label(payment_method: str) -> str:
    return PAYMENT_METHOD_LABELS.get(payment_method, payment_method)
