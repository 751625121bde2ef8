"""
Pesapal v3: order submission client and poll-status adapter.

Pesapal's IPN is only a nudge carrying the tracking id; the authoritative
answer always comes from ``GetTransactionStatus``. Polling the same status
twice yields the same dedup key, so repeated polls are harmless.
"""
import asyncio
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from pydantic import BaseModel

from order_payments.channels.base import ChannelAdapter, GatewayClient, GatewayResponseError
from order_payments.channels.schemas import (
    PesapalIpnNotification,
    PesapalIpnRegistration,
    PesapalSubmitOrderResponse,
    PesapalToken,
    PesapalTransactionStatus,
)
from order_payments.core.domain import (
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    SourceChannel,
    utcnow,
)

logger = structlog.get_logger(__name__)

BASE_URLS = {
    "sandbox": "https://cybqa.pesapal.com/pesapalv3",
    "live": "https://pay.pesapal.com/v3",
}

STATUS_INVALID = 0
STATUS_COMPLETED = 1
STATUS_FAILED = 2
STATUS_REVERSED = 3

STATUS_OUTCOMES = {
    STATUS_COMPLETED: PaymentOutcome.SUCCESSFUL,
    STATUS_FAILED: PaymentOutcome.FAILED,
    STATUS_REVERSED: PaymentOutcome.FAILED,
}

# Refresh tokens this long before Pesapal says they expire
TOKEN_EXPIRY_MARGIN = timedelta(seconds=30)
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=4)


class PesapalConfig(BaseModel):
    """Credentials and URLs for one Pesapal merchant account."""

    consumer_key: str = ""
    consumer_secret: str = ""
    env: str = "sandbox"
    ipn_url: str = ""
    callback_url: str = ""
    ipn_id: str = ""
    timeout_seconds: float = 10.0

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.env]


def parse_expiry(value: Optional[str]) -> datetime:
    """Parse Pesapal's ``expiryDate`` (up to 7 fractional digits, trailing Z)."""
    if not value:
        return utcnow() + DEFAULT_TOKEN_LIFETIME
    cleaned = re.sub(r"(\.\d{6})\d+", r"\1", value.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        logger.warning("pesapal_token_expiry_unparseable", value=value)
        return utcnow() + DEFAULT_TOKEN_LIFETIME
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=utcnow().tzinfo)
    return parsed


class PesapalClient(GatewayClient):
    """
    Pesapal v3 REST client.

    The bearer token is cached on the instance until shortly before its
    expiry. The IPN id is registered once per instance unless configured.
    """

    gateway = "pesapal"

    def __init__(
        self,
        config: PesapalConfig,
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
        self._token_expiry: Optional[datetime] = None
        self._ipn_id: Optional[str] = config.ipn_id or None
        self._token_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.config.consumer_key and self.config.consumer_secret)

    async def access_token(self) -> str:
        """Return a valid bearer token, requesting a new one when needed."""
        async with self._token_lock:
            if (
                self._token
                and self._token_expiry
                and utcnow() < self._token_expiry - TOKEN_EXPIRY_MARGIN
            ):
                return self._token

            body = await self._send(
                "POST",
                "/api/Auth/RequestToken",
                "auth",
                json={
                    "consumer_key": self.config.consumer_key,
                    "consumer_secret": self.config.consumer_secret,
                },
            )
            if not body.get("token"):
                raise GatewayResponseError(
                    "Pesapal did not return a token",
                    channel=self.gateway,
                    details={"error": body.get("error")},
                )
            token = PesapalToken.model_validate(body)
            self._token = token.token
            self._token_expiry = parse_expiry(token.expiry_date)
            logger.info("pesapal_token_refreshed", expires_at=self._token_expiry.isoformat())
            return self._token

    async def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self.access_token()}"}

    async def register_ipn(self) -> str:
        """Register the IPN URL (GET notifications) and cache its id."""
        if self._ipn_id:
            return self._ipn_id
        body = await self._send(
            "POST",
            "/api/URLSetup/RegisterIPN",
            "register_ipn",
            headers=await self._auth(),
            json={"url": self.config.ipn_url, "ipn_notification_type": "GET"},
        )
        registration = self._parse(PesapalIpnRegistration, body, "register_ipn")
        self._ipn_id = registration.ipn_id
        logger.info("pesapal_ipn_registered", ipn_id=self._ipn_id, url=self.config.ipn_url)
        return self._ipn_id

    async def submit_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> PesapalSubmitOrderResponse:
        """
        Submit an order and get the hosted payment page URL.

        Returns:
            PesapalSubmitOrderResponse: tracking id and redirect URL
        """
        notification_id = await self.register_ipn()
        payload = {
            "id": order_id,
            "currency": currency,
            "amount": str(amount),
            "description": description,
            "callback_url": callback_url or self.config.callback_url,
            "notification_id": notification_id,
            "billing_address": {
                "email_address": email or "",
                "phone_number": phone_number or "",
                "country_code": "UG",
                "first_name": first_name or "Guest",
                "last_name": last_name or "User",
            },
        }
        body = await self._send(
            "POST",
            "/api/Transactions/SubmitOrderRequest",
            "submit_order",
            headers=await self._auth(),
            json=payload,
        )
        response = self._parse(PesapalSubmitOrderResponse, body, "submit_order")
        logger.info(
            "pesapal_order_submitted",
            order_id=order_id,
            order_tracking_id=response.order_tracking_id,
        )
        return response

    async def get_transaction_status(self, tracking_id: str) -> PesapalTransactionStatus:
        """Authoritative status of one Pesapal transaction."""
        body = await self._send(
            "GET",
            "/api/Transactions/GetTransactionStatus",
            "status",
            headers=await self._auth(),
            params={"orderTrackingId": tracking_id},
        )
        return self._parse(PesapalTransactionStatus, body, "status")

    def _parse(self, schema: Any, body: Dict[str, Any], operation: str) -> Any:
        if body.get("error"):
            raise GatewayResponseError(
                f"Pesapal {operation} failed",
                channel=self.gateway,
                details={"error": body.get("error")},
            )
        try:
            return schema.model_validate(body)
        except ValueError as e:
            raise GatewayResponseError(
                f"Pesapal {operation} returned an unexpected body", channel=self.gateway
            ) from e


class PollResult(BaseModel):
    """What one status poll observed."""

    tracking_id: str
    status_key: str
    gateway_status: Optional[str] = None
    event: Optional[PaymentEvent] = None


class PesapalStatusAdapter(ChannelAdapter):
    """Poll-status adapter over ``GetTransactionStatus``."""

    name = "pesapal"
    source_channel = SourceChannel.POLL_STATUS

    def __init__(self, client: PesapalClient, default_currency: str = "UGX"):
        self.client = client
        self.default_currency = default_currency

    async def poll(
        self, order_ref: str, tracking_id: str, last_known: Optional[str] = None
    ) -> PollResult:
        """
        Ask Pesapal for the current status and normalize it.

        Args:
            order_ref: Order the tracking id was issued for
            tracking_id: Pesapal order tracking id
            last_known: Status key seen on the previous poll

        Returns:
            PollResult: ``event`` is None while the payment is pending/invalid
            or when the status has not changed since ``last_known``

        Raises:
            GatewayUnavailableError: Transient failure (retry on next cycle)
            GatewayResponseError: Pesapal refused the request
            PayloadValidationError: The status does not belong to this order
        """
        status = await self.client.get_transaction_status(tracking_id)
        status_key = str(status.status_code) if status.status_code is not None else "unknown"
        result = PollResult(
            tracking_id=tracking_id,
            status_key=status_key,
            gateway_status=status.payment_status_description,
        )

        outcome = STATUS_OUTCOMES.get(status.status_code) if status.status_code is not None else None
        if outcome is None:
            logger.debug("pesapal_status_pending", order_id=order_ref, status_code=status.status_code)
            return result
        if last_known is not None and last_known == status_key:
            return result

        result.event = self.normalize(order_ref, tracking_id, status, outcome)
        return result

    def normalize(
        self,
        order_ref: str,
        tracking_id: str,
        status: PesapalTransactionStatus,
        outcome: PaymentOutcome,
    ) -> PaymentEvent:
        if status.merchant_reference and status.merchant_reference != order_ref:
            raise self._invalid(
                "Status belongs to a different order",
                merchant_reference=status.merchant_reference,
            )
        if status.amount is None:
            raise self._invalid("Status carries no amount", tracking_id=tracking_id)

        return self._event(
            dedup_key=f"pesapal:{tracking_id}:{status.status_code}",
            order_ref=order_ref,
            reported_amount=status.amount,
            reported_currency=status.currency or self.default_currency,
            outcome=outcome,
            source_channel=self.source_channel,
            payment_method=PaymentMethod.PESAPAL,
            external_reference=tracking_id,
            evidence={
                "gateway": self.name,
                "status_code": status.status_code,
                "gateway_status": status.payment_status_description,
                "confirmation_code": status.confirmation_code,
                "payment_account": status.payment_account,
                "gateway_method": status.payment_method,
            },
        )

    def parse_ipn(self, query: Mapping[str, Any]) -> PesapalIpnNotification:
        """Validate the IPN query string."""
        return self._validate(PesapalIpnNotification, dict(query))

    @staticmethod
    def acknowledge(
        notification: PesapalIpnNotification, result: Optional[PollResult], status: int = 200
    ) -> Dict[str, Any]:
        """Body Pesapal expects back from an IPN call."""
        return {
            "OrderTrackingId": notification.order_tracking_id,
            "OrderMerchantReference": notification.order_merchant_reference,
            "OrderNotificationType": notification.order_notification_type,
            "OrderPaymentStatus": result.gateway_status if result else None,
            "status": status,
        }
