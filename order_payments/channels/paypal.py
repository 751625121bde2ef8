"""
PayPal Orders v2: checkout creation and redirect-capture adapter.

The customer approves on PayPal and is sent back to the storefront with the
PayPal order id (``token``). Capturing that order is the settlement evidence.
"""
import asyncio
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Tuple

import httpx
import structlog
from pydantic import BaseModel

from order_payments.channels.base import ChannelAdapter, GatewayClient, GatewayResponseError
from order_payments.channels.schemas import PayPalCapture, PayPalOrder, PayPalToken
from order_payments.core.domain import (
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    SourceChannel,
    utcnow,
)

logger = structlog.get_logger(__name__)

BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

CAPTURE_OUTCOMES = {
    "COMPLETED": PaymentOutcome.SUCCESSFUL,
    "PENDING": PaymentOutcome.PENDING,
    "DECLINED": PaymentOutcome.FAILED,
    "FAILED": PaymentOutcome.FAILED,
    "VOIDED": PaymentOutcome.FAILED,
}

TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


class PayPalConfig(BaseModel):
    """REST app credentials and storefront return URLs."""

    client_id: str = ""
    client_secret: str = ""
    env: str = "sandbox"
    return_url: str = ""
    cancel_url: str = ""
    brand_name: str = "Shop"
    timeout_seconds: float = 10.0
    currency: str = "USD"
    # Settlement currency units per unit of ``currency``
    exchange_rate: Decimal = Decimal("1")

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.env]

    def charge_for(self, total: Decimal, currency: str) -> Tuple[Decimal, str]:
        """
        Amount and currency a PayPal order is created in for an order total.

        Totals already in the PayPal currency are charged as they are; any
        other total is converted at ``exchange_rate``.
        """
        if currency.upper() == self.currency:
            return Decimal(format_amount(Decimal(total))), self.currency
        return Decimal(format_amount(Decimal(total) / self.exchange_rate)), self.currency


def format_amount(amount: Decimal) -> str:
    """PayPal wants a string with exactly two decimals."""
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class PayPalClient(GatewayClient):
    """PayPal REST client with a cached client-credentials token."""

    gateway = "paypal"

    def __init__(
        self,
        config: PayPalConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        retry_wait_seconds: float = 1.0,
    ):
        super().__init__(
            config.base_url,
            timeout_seconds=config.timeout_seconds,
            http_client=http_client,
            max_attempts=max_attempts,
            retry_wait_seconds=retry_wait_seconds,
        )
        self.config = config
        self._token: Optional[str] = None
        self._token_expiry = None
        self._token_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.config.client_id and self.config.client_secret)

    async def access_token(self) -> str:
        async with self._token_lock:
            if self._token and self._token_expiry and utcnow() < self._token_expiry:
                return self._token
            body = await self._send(
                "POST",
                "/v1/oauth2/token",
                "auth",
                auth=(self.config.client_id, self.config.client_secret),
                data={"grant_type": "client_credentials"},
            )
            token = PayPalToken.model_validate(body)
            self._token = token.access_token
            self._token_expiry = (
                utcnow() + timedelta(seconds=token.expires_in) - TOKEN_EXPIRY_MARGIN
            )
            logger.info("paypal_token_refreshed", expires_in=token.expires_in)
            return self._token

    async def _auth(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {await self.access_token()}",
            "Content-Type": "application/json",
        }

    async def create_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: Optional[str] = None,
    ) -> PayPalOrder:
        """
        Create a CAPTURE-intent PayPal order for one storefront order.

        Returns:
            PayPalOrder: Its ``approve_url`` is where the customer is sent
        """
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order_id,
                    "description": description or f"Order {order_id}",
                    "amount": {"currency_code": currency, "value": format_amount(amount)},
                }
            ],
            "application_context": {
                "brand_name": self.config.brand_name,
                "user_action": "PAY_NOW",
                "return_url": self.config.return_url,
                "cancel_url": self.config.cancel_url,
            },
        }
        body = await self._send(
            "POST",
            "/v2/checkout/orders",
            "create_order",
            headers=await self._auth(),
            json=payload,
        )
        paypal_order = PayPalOrder.model_validate(body)
        logger.info("paypal_order_created", order_id=order_id, paypal_order_id=paypal_order.id)
        return paypal_order

    async def capture_order(self, paypal_order_id: str) -> PayPalOrder:
        """Capture an approved PayPal order."""
        body = await self._send(
            "POST",
            f"/v2/checkout/orders/{paypal_order_id}/capture",
            "capture",
            headers=await self._auth(),
            json={},
        )
        return PayPalOrder.model_validate(body)

    async def get_order(self, paypal_order_id: str) -> PayPalOrder:
        body = await self._send(
            "GET",
            f"/v2/checkout/orders/{paypal_order_id}",
            "get_order",
            headers=await self._auth(),
        )
        return PayPalOrder.model_validate(body)


class PayPalCaptureAdapter(ChannelAdapter):
    """Redirect-capture adapter: captures on return and normalizes the result."""

    name = "paypal"
    source_channel = SourceChannel.REDIRECT_CAPTURE

    def __init__(self, client: PayPalClient):
        self.client = client

    async def capture(self, paypal_order_id: str, order_ref: str) -> PaymentEvent:
        """
        Capture the approved PayPal order and return the settlement evidence.

        Raises:
            PayloadValidationError: If the capture belongs to another order
            GatewayResponseError: If PayPal refuses the capture
            GatewayUnavailableError: If PayPal cannot be reached
        """
        logger.info("paypal_capture_started", order_id=order_ref, paypal_order_id=paypal_order_id)
        paypal_order = await self.client.capture_order(paypal_order_id)
        return self.from_order(order_ref, paypal_order)

    def from_order(self, order_ref: str, paypal_order: PayPalOrder) -> PaymentEvent:
        if not paypal_order.purchase_units:
            raise self._invalid("Capture response has no purchase units", paypal_order_id=paypal_order.id)

        unit = paypal_order.purchase_units[0]
        if unit.reference_id and unit.reference_id != order_ref:
            raise self._invalid(
                "PayPal order belongs to a different order",
                reference_id=unit.reference_id,
            )

        capture = self._capture_of(paypal_order)
        outcome = CAPTURE_OUTCOMES.get(capture.status.upper())
        if outcome is None:
            raise GatewayResponseError(
                f"Unknown capture status {capture.status}",
                channel=self.name,
                details={"paypal_order_id": paypal_order.id},
            )

        return self._event(
            dedup_key=f"paypal:{capture.id}",
            order_ref=order_ref,
            reported_amount=capture.amount.value,
            reported_currency=capture.amount.currency_code,
            outcome=outcome,
            source_channel=self.source_channel,
            payment_method=PaymentMethod.PAYPAL,
            external_reference=paypal_order.id,
            evidence={
                "gateway": self.name,
                "capture_id": capture.id,
                "gateway_status": capture.status,
                "order_status": paypal_order.status,
            },
        )

    def _capture_of(self, paypal_order: PayPalOrder) -> PayPalCapture:
        for unit in paypal_order.purchase_units:
            if unit.payments and unit.payments.captures:
                return unit.payments.captures[0]
        raise self._invalid("Capture response has no captures", paypal_order_id=paypal_order.id)
