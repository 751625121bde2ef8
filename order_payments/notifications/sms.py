"""
SMS notifications through Africa's Talking.

Without credentials the client runs in simulation mode: messages are logged
and reported as delivered, so development and test environments never need a
provider account.
"""
import re
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from order_payments.monitoring.metrics import metrics
from order_payments.notifications.base import (
    DeliveryError,
    InvalidPhoneNumberError,
    format_amount,
    method_label,
    order_number,
)

logger = structlog.get_logger(__name__)

LIVE_URL = "https://api.africastalking.com/version1/messaging"
SANDBOX_URL = "https://api.sandbox.africastalking.com/version1/messaging"

PHONE_PATTERNS = {
    "UG": re.compile(r"^\+256\d{9}$"),
    "KE": re.compile(r"^\+254\d{9}$"),
    "TZ": re.compile(r"^\+255\d{9}$"),
}

# Recipient status codes Africa's Talking reports as accepted
ACCEPTED_STATUS_CODES = {100, 101, 102}


class TransientSMSError(DeliveryError):
    """Provider unavailable; worth retrying."""

    pass


class SMSConfig(BaseModel):
    username: str = ""
    api_key: str = ""
    sender_id: str = ""
    region: str = "UG"
    timeout_seconds: float = 10.0

    @property
    def simulated(self) -> bool:
        return not (self.username and self.api_key)

    @property
    def endpoint(self) -> str:
        return SANDBOX_URL if self.username == "sandbox" else LIVE_URL


class SMSResult(BaseModel):
    simulated: bool = False
    recipients: List[Dict[str, Any]] = []


def payment_confirmation_message(
    order_id: str, amount: Any, payment_method: str, currency: str = "UGX"
) -> str:
    return (
        f"Payment Received! Your payment of {currency} {format_amount(amount)} for order "
        f"{order_number(order_id)} via {method_label(payment_method)} has been confirmed. "
        "Your order will be processed shortly."
    )


def dispatch_message(order_id: str) -> str:
    return f"Your order {order_number(order_id)} has been dispatched and is on its way!"


def delivery_message(order_id: str) -> str:
    return (
        f"Order Delivered! Your order {order_number(order_id)} has been successfully "
        "delivered. Thank you for shopping with us! We hope to serve you again soon."
    )


def cancellation_message(order_id: str, reason: Optional[str] = None) -> str:
    message = f"Your order {order_number(order_id)} has been cancelled."
    if reason:
        message += f" Reason: {reason}."
    return message


class SMSClient:
    """Africa's Talking messaging client."""

    def __init__(self, config: SMSConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self.phone_pattern = PHONE_PATTERNS.get(config.region.upper(), PHONE_PATTERNS["UG"])
        if config.simulated:
            logger.warning("sms_simulation_mode", reason="credentials not configured")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    def validate_number(self, phone_number: str) -> str:
        """
        Raises:
            InvalidPhoneNumberError: If the number does not match the region
        """
        normalized = phone_number.replace(" ", "")
        if not self.phone_pattern.match(normalized):
            raise InvalidPhoneNumberError(
                f"Invalid {self.config.region} phone number format",
                recipient=phone_number,
            )
        return normalized

    async def send(self, phone_number: str, message: str) -> SMSResult:
        """
        Send one SMS.

        Raises:
            InvalidPhoneNumberError: Bad number (not retried)
            DeliveryError: Provider refused the message or stayed unavailable
        """
        to = self.validate_number(phone_number)

        if self.config.simulated:
            logger.info("sms_simulated", to=to, message_length=len(message))
            metrics.record_gateway_call("africastalking", "send_sms", "simulated", 0.0)
            return SMSResult(simulated=True)

        recipients = await self._post(to, message)
        rejected = [r for r in recipients if r.get("statusCode") not in ACCEPTED_STATUS_CODES]
        if rejected or not recipients:
            raise DeliveryError(
                "SMS rejected by provider",
                recipient=to,
                details={"recipients": recipients},
            )

        logger.info("sms_sent", to=to, statuses=[r.get("status") for r in recipients])
        return SMSResult(recipients=recipients)

    @retry(
        retry=retry_if_exception_type(TransientSMSError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _post(self, to: str, message: str) -> List[Dict[str, Any]]:
        data = {"username": self.config.username, "to": to, "message": message}
        if self.config.sender_id:
            data["from"] = self.config.sender_id

        start = time.time()
        try:
            response = await self.http_client.post(
                self.config.endpoint,
                data=data,
                headers={"apiKey": self.config.api_key, "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            metrics.record_gateway_call("africastalking", "send_sms", "unreachable", time.time() - start)
            logger.warning("sms_provider_unreachable", error=str(e))
            raise TransientSMSError(f"SMS provider unreachable: {e}", recipient=to) from e

        metrics.record_gateway_call(
            "africastalking", "send_sms", str(response.status_code), time.time() - start
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSMSError(
                f"SMS provider returned {response.status_code}", recipient=to
            )
        if response.status_code >= 400:
            raise DeliveryError(
                f"SMS provider returned {response.status_code}",
                recipient=to,
                details={"body": response.text[:500]},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise DeliveryError("SMS provider returned a non-JSON body", recipient=to) from e
        return list(body.get("SMSMessageData", {}).get("Recipients", []))
