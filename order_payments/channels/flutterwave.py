"""
Flutterwave mobile money: charge initiation client and push webhook adapter.

Charges are initiated with a ``tx_ref`` of the form ``ORDER-<order_id>-<millis>``
which Flutterwave echoes back on every webhook, so the adapter can recover the
order without any lookup.
"""
import hashlib
import hmac
import json
import re
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

from order_payments.channels.base import (
    ChannelAdapter,
    GatewayClient,
    GatewayResponseError,
    SignatureVerificationError,
)
from order_payments.channels.schemas import (
    FlutterwaveChargeData,
    FlutterwaveEnvelope,
    FlutterwaveWebhookPayload,
)
from order_payments.core.domain import (
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    SourceChannel,
)
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "verif-hash"
CHARGE_COMPLETED = "charge.completed"

UGANDA_PHONE = re.compile(r"^\+256\d{9}$")
TX_REF_PATTERN = re.compile(r"^ORDER-(?P<order_id>.+)-(?P<millis>\d+)$")

MTN_PREFIXES = ("77", "78", "76", "39")
AIRTEL_PREFIXES = ("70", "75", "74", "20")

NETWORKS = {
    PaymentMethod.MTN_MOMO: "MTN",
    PaymentMethod.AIRTEL_MONEY: "AIRTEL",
}

STATUS_OUTCOMES = {
    "successful": PaymentOutcome.SUCCESSFUL,
    "failed": PaymentOutcome.FAILED,
    "cancelled": PaymentOutcome.FAILED,
    "pending": PaymentOutcome.PENDING,
}


class FlutterwaveConfig(BaseModel):
    """Credentials for one Flutterwave account."""

    secret_key: str = ""
    webhook_secret: str = ""
    base_url: str = "https://api.flutterwave.com/v3"
    timeout_seconds: float = 10.0


def detect_provider(phone_number: str) -> PaymentMethod:
    """
    Guess the mobile money network from a Ugandan number.

    MTN: 77, 78, 76, 39. Airtel: 70, 75, 74, 20. Anything else is MTN.
    """
    local = phone_number.replace("+256", "", 1)
    prefix = local[:2]
    if prefix in MTN_PREFIXES:
        return PaymentMethod.MTN_MOMO
    if prefix in AIRTEL_PREFIXES:
        return PaymentMethod.AIRTEL_MONEY
    return PaymentMethod.MTN_MOMO


def make_tx_ref(order_id: str, now_millis: Optional[int] = None) -> str:
    """Transaction reference issued at charge initiation."""
    millis = now_millis if now_millis is not None else int(time.time() * 1000)
    return f"ORDER-{order_id}-{millis}"


def parse_tx_ref(tx_ref: str) -> Optional[str]:
    """Order id embedded in a transaction reference, or None."""
    match = TX_REF_PATTERN.match(tx_ref)
    return match.group("order_id") if match else None


class FlutterwaveClient(GatewayClient):
    """Flutterwave v3 REST client for mobile money charges."""

    gateway = "flutterwave"

    def __init__(
        self,
        config: FlutterwaveConfig,
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

    @property
    def configured(self) -> bool:
        return bool(self.config.secret_key)

    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.secret_key}"}

    async def charge_mobile_money(
        self,
        tx_ref: str,
        amount: Decimal,
        currency: str,
        phone_number: str,
        network: PaymentMethod,
        email: Optional[str] = None,
        fullname: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> FlutterwaveEnvelope:
        """
        Ask Flutterwave to push a mobile money prompt to the customer.

        Args:
            tx_ref: Reference echoed back on the webhook
            amount: Amount to charge
            currency: Currency code
            phone_number: Customer number in +256XXXXXXXXX form
            network: MTN or Airtel method

        Returns:
            FlutterwaveEnvelope: Gateway response (``data.link`` may carry a
            redirect for authorization)

        Raises:
            GatewayResponseError: If Flutterwave refuses the charge
            GatewayUnavailableError: If Flutterwave cannot be reached
        """
        payload = {
            "tx_ref": tx_ref,
            "amount": str(amount),
            "currency": currency,
            "network": NETWORKS[network],
            "email": email,
            "phone_number": phone_number,
            "fullname": fullname or email,
            "redirect_url": redirect_url,
        }
        logger.info(
            "flutterwave_charge_initiating",
            tx_ref=tx_ref,
            network=NETWORKS[network],
            amount=str(amount),
        )
        body = await self._send(
            "POST",
            "/charges",
            "charge",
            headers=self._auth(),
            params={"type": "mobile_money_uganda"},
            json=payload,
        )
        envelope = FlutterwaveEnvelope.model_validate(body)
        if envelope.status != "success":
            raise GatewayResponseError(
                envelope.message or "Flutterwave charge failed",
                channel=self.gateway,
                details={"tx_ref": tx_ref},
            )
        return envelope


class FlutterwaveWebhookAdapter(ChannelAdapter):
    """
    Push-webhook adapter.

    Verifies the ``verif-hash`` header (HMAC-SHA256 of the raw body with the
    webhook secret) before parsing anything.
    """

    name = "flutterwave"
    source_channel = SourceChannel.PUSH_WEBHOOK

    def __init__(self, webhook_secret: str):
        self.webhook_secret = webhook_secret

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """
        Raises:
            SignatureVerificationError: If the secret is unset or the hash differs
        """
        if not self.webhook_secret:
            metrics.record_invalid_payload(self.source_channel.value, "signature")
            raise SignatureVerificationError(
                "Flutterwave webhook secret is not configured", channel=self.name
            )
        if not signature or not hmac.compare_digest(self.sign(raw_body), signature):
            logger.warning("flutterwave_signature_invalid", has_signature=bool(signature))
            metrics.record_invalid_payload(self.source_channel.value, "signature")
            raise SignatureVerificationError("Invalid webhook signature", channel=self.name)

    def parse(self, raw_body: bytes, signature: Optional[str]) -> Optional[PaymentEvent]:
        """
        Verify and normalize one webhook delivery.

        Returns:
            Optional[PaymentEvent]: None for events that are not charge results

        Raises:
            SignatureVerificationError: If the origin cannot be verified
            PayloadValidationError: If the body is not a usable charge payload
        """
        self.verify_signature(raw_body, signature)

        try:
            body: Any = json.loads(raw_body)
        except ValueError as e:
            raise self._invalid("Webhook body is not JSON") from e

        payload = self._validate(FlutterwaveWebhookPayload, body)
        if payload.event != CHARGE_COMPLETED:
            logger.info("flutterwave_event_ignored", event_type=payload.event)
            return None
        return self.from_charge(payload.data)

    def from_charge(self, data: FlutterwaveChargeData) -> PaymentEvent:
        """Normalize a charge record (from a webhook or a verify call)."""
        order_id = parse_tx_ref(data.tx_ref)
        if order_id is None:
            raise self._invalid("Unrecognized tx_ref", tx_ref=data.tx_ref)

        status = data.status.lower()
        outcome = STATUS_OUTCOMES.get(status)
        if outcome is None:
            raise self._invalid("Unknown charge status", status=data.status)

        return self._event(
            dedup_key=f"flutterwave:{data.id}:{status}",
            order_ref=order_id,
            reported_amount=data.amount,
            reported_currency=data.currency,
            outcome=outcome,
            source_channel=self.source_channel,
            payment_method=self._method(data),
            external_reference=data.tx_ref,
            evidence={
                "gateway": self.name,
                "transaction_id": str(data.id),
                "flw_ref": data.flw_ref,
                "gateway_status": status,
                "network": data.network,
            },
        )

    @staticmethod
    def _method(data: FlutterwaveChargeData) -> PaymentMethod:
        network = (data.network or "").lower()
        if "airtel" in network:
            return PaymentMethod.AIRTEL_MONEY
        if "mtn" in network:
            return PaymentMethod.MTN_MOMO
        phone = data.customer.phone_number if data.customer else None
        if phone:
            return detect_provider(phone)
        return PaymentMethod.MTN_MOMO
