"""Outbound notifications: SMS, email and inventory release."""
from .base import DeliveryError, InvalidPhoneNumberError, NotificationError, order_number
from .handlers import build_handlers
from .inventory import InventoryClient
from .mailer import EmailConfig, EmailSender
from .sms import SMSClient, SMSConfig

__all__ = [
    "DeliveryError",
    "InvalidPhoneNumberError",
    "NotificationError",
    "order_number",
    "build_handlers",
    "InventoryClient",
    "EmailConfig",
    "EmailSender",
    "SMSClient",
    "SMSConfig",
]
