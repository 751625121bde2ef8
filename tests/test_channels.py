"""
Channel adapter tests.

Each adapter must turn exactly what its channel says into one normalized
event, and refuse anything it cannot vouch for.
"""
import json
from decimal import Decimal
from typing import Any, Dict

import httpx
import pytest

from order_payments.channels import (
    CashOnDeliveryAdapter,
    FlutterwaveWebhookAdapter,
    GatewayResponseError,
    GatewayUnavailableError,
    ManualMomoAdapter,
    PayloadValidationError,
    PayPalCaptureAdapter,
    PayPalClient,
    PayPalConfig,
    PesapalClient,
    PesapalConfig,
    PesapalStatusAdapter,
    SignatureVerificationError,
    detect_provider,
    make_tx_ref,
)
from order_payments.channels.flutterwave import parse_tx_ref
from order_payments.channels.pesapal import parse_expiry
from order_payments.core import PaymentMethod, PaymentOutcome, SourceChannel

WEBHOOK_SECRET = "flw_test_webhook_secret"


def flutterwave_body(
    tx_ref: str = "ORDER-O1-1700000000000",
    status: str = "successful",
    amount: Any = 120000,
    event: str = "charge.completed",
    network: str = "MTN",
    transaction_id: int = 9001,
) -> bytes:
    payload: Dict[str, Any] = {
        "event": event,
        "data": {
            "id": transaction_id,
            "tx_ref": tx_ref,
            "flw_ref": "FLW-MOCK-123",
            "amount": amount,
            "currency": "UGX",
            "status": status,
            "network": network,
            "customer": {"phone_number": "+256772123456", "email": "buyer@example.com"},
        },
    }
    return json.dumps(payload).encode()


class TestFlutterwaveWebhookAdapter:
    """Push-webhook adapter."""

    @pytest.fixture
    def adapter(self) -> FlutterwaveWebhookAdapter:
        return FlutterwaveWebhookAdapter(WEBHOOK_SECRET)

    @pytest.mark.unit
    def test_parses_successful_charge(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = flutterwave_body()
        event = adapter.parse(body, adapter.sign(body))

        assert event is not None
        assert event.order_ref == "O1"
        assert event.reported_amount == Decimal("120000")
        assert event.reported_currency == "UGX"
        assert event.outcome == PaymentOutcome.SUCCESSFUL
        assert event.source_channel == SourceChannel.PUSH_WEBHOOK
        assert event.payment_method == PaymentMethod.MTN_MOMO
        assert event.external_reference == "ORDER-O1-1700000000000"
        assert event.dedup_key == "flutterwave:9001:successful"

    @pytest.mark.unit
    def test_redelivery_has_same_dedup_key(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = flutterwave_body()
        first = adapter.parse(body, adapter.sign(body))
        second = adapter.parse(body, adapter.sign(body))

        assert first is not None and second is not None
        assert first.dedup_key == second.dedup_key
        assert first.event_id == second.event_id

    @pytest.mark.unit
    def test_failed_charge_has_distinct_dedup_key(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = flutterwave_body(status="failed")
        event = adapter.parse(body, adapter.sign(body))

        assert event is not None
        assert event.outcome == PaymentOutcome.FAILED
        assert event.dedup_key == "flutterwave:9001:failed"

    @pytest.mark.unit
    def test_rejects_bad_signature(self, adapter: FlutterwaveWebhookAdapter) -> None:
        with pytest.raises(SignatureVerificationError):
            adapter.parse(flutterwave_body(), "not-the-hash")

    @pytest.mark.unit
    def test_rejects_missing_signature(self, adapter: FlutterwaveWebhookAdapter) -> None:
        with pytest.raises(SignatureVerificationError):
            adapter.parse(flutterwave_body(), None)

    @pytest.mark.unit
    def test_unconfigured_secret_rejects_everything(self) -> None:
        adapter = FlutterwaveWebhookAdapter("")
        with pytest.raises(SignatureVerificationError):
            adapter.parse(flutterwave_body(), "anything")

    @pytest.mark.unit
    def test_other_events_are_ignored(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = flutterwave_body(event="transfer.completed")
        assert adapter.parse(body, adapter.sign(body)) is None

    @pytest.mark.unit
    def test_rejects_non_json_body(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = b"not json"
        with pytest.raises(PayloadValidationError):
            adapter.parse(body, adapter.sign(body))

    @pytest.mark.unit
    def test_rejects_missing_amount(self, adapter: FlutterwaveWebhookAdapter) -> None:
        payload = json.loads(flutterwave_body())
        del payload["data"]["amount"]
        body = json.dumps(payload).encode()

        with pytest.raises(PayloadValidationError):
            adapter.parse(body, adapter.sign(body))

    @pytest.mark.unit
    def test_rejects_unrecognized_tx_ref(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = flutterwave_body(tx_ref="random-reference")
        with pytest.raises(PayloadValidationError):
            adapter.parse(body, adapter.sign(body))

    @pytest.mark.unit
    def test_oversized_order_id_is_a_payload_error(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = flutterwave_body(tx_ref=make_tx_ref("X" * 80, now_millis=1700000000000))
        with pytest.raises(PayloadValidationError):
            adapter.parse(body, adapter.sign(body))

    @pytest.mark.unit
    def test_airtel_network(self, adapter: FlutterwaveWebhookAdapter) -> None:
        body = flutterwave_body(network="AIRTEL")
        event = adapter.parse(body, adapter.sign(body))
        assert event is not None
        assert event.payment_method == PaymentMethod.AIRTEL_MONEY


class TestFlutterwaveHelpers:
    """tx_ref and network detection."""

    @pytest.mark.unit
    def test_tx_ref_round_trip(self) -> None:
        tx_ref = make_tx_ref("abc-123", now_millis=1700000000000)
        assert tx_ref == "ORDER-abc-123-1700000000000"
        assert parse_tx_ref(tx_ref) == "abc-123"

    @pytest.mark.unit
    def test_parse_tx_ref_rejects_foreign_reference(self) -> None:
        assert parse_tx_ref("PAY-123") is None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "phone,expected",
        [
            ("+256772123456", PaymentMethod.MTN_MOMO),
            ("+256392123456", PaymentMethod.MTN_MOMO),
            ("+256702123456", PaymentMethod.AIRTEL_MONEY),
            ("+256752123456", PaymentMethod.AIRTEL_MONEY),
            ("+256312123456", PaymentMethod.MTN_MOMO),
        ],
    )
    def test_detect_provider(self, phone: str, expected: PaymentMethod) -> None:
        assert detect_provider(phone) == expected


class TestPesapalStatusAdapter:
    """Poll-status adapter over a faked Pesapal API."""

    @pytest.fixture
    def adapter(self, http_client: httpx.AsyncClient) -> PesapalStatusAdapter:
        client = PesapalClient(
            PesapalConfig(consumer_key="key", consumer_secret="secret", ipn_id="ipn-1"),
            http_client=http_client,
            retry_wait_seconds=0,
        )
        return PesapalStatusAdapter(client, default_currency="UGX")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_status_yields_event(self, adapter: PesapalStatusAdapter, gateways: Any) -> None:
        gateways.pesapal_status = {
            "status_code": 1,
            "payment_status_description": "Completed",
            "merchant_reference": "O7",
            "amount": 75000,
            "currency": "UGX",
            "confirmation_code": "CONF-1",
        }

        result = await adapter.poll("O7", "trk-7")

        assert result.status_key == "1"
        assert result.gateway_status == "Completed"
        assert result.event is not None
        assert result.event.outcome == PaymentOutcome.SUCCESSFUL
        assert result.event.dedup_key == "pesapal:trk-7:1"
        assert result.event.external_reference == "trk-7"
        assert result.event.reported_amount == Decimal("75000")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_status_yields_no_event(self, adapter: PesapalStatusAdapter) -> None:
        result = await adapter.poll("O7", "trk-7")
        assert result.event is None
        assert result.status_key == "0"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unchanged_status_yields_no_event(self, adapter: PesapalStatusAdapter, gateways: Any) -> None:
        gateways.pesapal_status = {
            "status_code": 2,
            "payment_status_description": "Failed",
            "merchant_reference": "O7",
            "amount": 75000,
        }

        result = await adapter.poll("O7", "trk-7", last_known="2")
        assert result.event is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_for_other_order_is_invalid(self, adapter: PesapalStatusAdapter, gateways: Any) -> None:
        gateways.pesapal_status = {
            "status_code": 1,
            "payment_status_description": "Completed",
            "merchant_reference": "SOMEONE-ELSE",
            "amount": 75000,
        }

        with pytest.raises(PayloadValidationError):
            await adapter.poll("O7", "trk-7")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_currency_is_a_payload_error(
        self, adapter: PesapalStatusAdapter, gateways: Any
    ) -> None:
        gateways.pesapal_status = {
            "status_code": 1,
            "payment_status_description": "Completed",
            "merchant_reference": "O7",
            "amount": 75000,
            "currency": "SHILLINGS",
        }

        with pytest.raises(PayloadValidationError):
            await adapter.poll("O7", "trk-7")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_outage_is_unavailable_not_failed(self, adapter: PesapalStatusAdapter, gateways: Any) -> None:
        gateways.pesapal_http_status = 503

        with pytest.raises(GatewayUnavailableError):
            await adapter.poll("O7", "trk-7")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_is_cached(self, adapter: PesapalStatusAdapter, gateways: Any) -> None:
        await adapter.poll("O7", "trk-7")
        await adapter.poll("O7", "trk-7")

        assert gateways.paths().count("/pesapalv3/api/Auth/RequestToken") == 1

    @pytest.mark.unit
    def test_parse_ipn(self, adapter: PesapalStatusAdapter) -> None:
        notification = adapter.parse_ipn(
            {"OrderTrackingId": "trk-7", "OrderMerchantReference": "O7", "OrderNotificationType": "IPNCHANGE"}
        )
        assert notification.order_tracking_id == "trk-7"
        assert notification.order_merchant_reference == "O7"

    @pytest.mark.unit
    def test_parse_ipn_requires_tracking_id(self, adapter: PesapalStatusAdapter) -> None:
        with pytest.raises(PayloadValidationError):
            adapter.parse_ipn({"OrderMerchantReference": "O7"})

    @pytest.mark.unit
    def test_parse_expiry_handles_long_fractions(self) -> None:
        expiry = parse_expiry("2024-05-01T10:00:00.1234567Z")
        assert expiry.year == 2024
        assert expiry.tzinfo is not None


def paypal_capture_response(
    reference_id: str = "O9",
    status: str = "COMPLETED",
    value: str = "25.00",
    currency: str = "USD",
) -> Dict[str, Any]:
    return {
        "id": "PP-ORDER-1",
        "status": "COMPLETED",
        "purchase_units": [
            {
                "reference_id": reference_id,
                "payments": {
                    "captures": [
                        {
                            "id": "CAP-1",
                            "status": status,
                            "amount": {"currency_code": currency, "value": value},
                        }
                    ]
                },
            }
        ],
    }


class TestPayPalCaptureAdapter:
    """Redirect-capture adapter."""

    @pytest.fixture
    def adapter(self, http_client: httpx.AsyncClient) -> PayPalCaptureAdapter:
        client = PayPalClient(
            PayPalConfig(client_id="client", client_secret="secret"),
            http_client=http_client,
            retry_wait_seconds=0,
        )
        return PayPalCaptureAdapter(client)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_capture(self, adapter: PayPalCaptureAdapter, gateways: Any) -> None:
        gateways.paypal_capture = paypal_capture_response()

        event = await adapter.capture("PP-ORDER-1", "O9")

        assert event.outcome == PaymentOutcome.SUCCESSFUL
        assert event.source_channel == SourceChannel.REDIRECT_CAPTURE
        assert event.dedup_key == "paypal:CAP-1"
        assert event.external_reference == "PP-ORDER-1"
        assert event.reported_amount == Decimal("25.00")
        assert event.reported_currency == "USD"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_capture(self, adapter: PayPalCaptureAdapter, gateways: Any) -> None:
        gateways.paypal_capture = paypal_capture_response(status="DECLINED")

        event = await adapter.capture("PP-ORDER-1", "O9")
        assert event.outcome == PaymentOutcome.FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_for_other_order_is_invalid(self, adapter: PayPalCaptureAdapter, gateways: Any) -> None:
        gateways.paypal_capture = paypal_capture_response(reference_id="OTHER")

        with pytest.raises(PayloadValidationError):
            await adapter.capture("PP-ORDER-1", "O9")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_capture_status(self, adapter: PayPalCaptureAdapter, gateways: Any) -> None:
        gateways.paypal_capture = paypal_capture_response(status="MYSTERY")

        with pytest.raises(GatewayResponseError):
            await adapter.capture("PP-ORDER-1", "O9")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_currency_is_a_payload_error(
        self, adapter: PayPalCaptureAdapter, gateways: Any
    ) -> None:
        gateways.paypal_capture = paypal_capture_response(currency="DOLLARS")

        with pytest.raises(PayloadValidationError):
            await adapter.capture("PP-ORDER-1", "O9")


class TestPayPalCharge:
    """Totals outside the PayPal currency are converted before charging."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "total,currency,expected",
        [
            ("92500", "UGX", Decimal("25.00")),
            ("100000", "ugx", Decimal("27.03")),
            ("25", "USD", Decimal("25.00")),
        ],
    )
    def test_charge_for(self, total: str, currency: str, expected: Decimal) -> None:
        config = PayPalConfig(currency="USD", exchange_rate=Decimal("3700"))

        amount, charge_currency = config.charge_for(Decimal(total), currency)

        assert amount == expected
        assert charge_currency == "USD"


class TestManualMomoAdapter:
    """Admin-entered mobile money confirmations."""

    @pytest.fixture
    def adapter(self) -> ManualMomoAdapter:
        return ManualMomoAdapter(default_currency="UGX")

    @pytest.mark.unit
    def test_parse_confirmation(self, adapter: ManualMomoAdapter) -> None:
        event = adapter.parse(
            {
                "order_ref": "O3",
                "reported_amount": "50000",
                "transaction_id": " MP240501.1234 ",
                "verified_by": "ops@shop.test",
                "evidence_note": "Screenshot matched",
            }
        )

        assert event.dedup_key == "manual_momo:MP240501.1234"
        assert event.external_reference == "MP240501.1234"
        assert event.outcome == PaymentOutcome.SUCCESSFUL
        assert event.source_channel == SourceChannel.MANUAL_ENTRY
        assert event.payment_method == PaymentMethod.MANUAL_MOMO
        assert event.reported_currency == "UGX"

    @pytest.mark.unit
    def test_unapproved_entry_is_failed(self, adapter: ManualMomoAdapter) -> None:
        event = adapter.parse(
            {
                "order_ref": "O3",
                "reported_amount": "50000",
                "transaction_id": "MP1",
                "verified_by": "ops@shop.test",
                "approved": False,
            }
        )
        assert event.outcome == PaymentOutcome.FAILED

    @pytest.mark.unit
    def test_missing_transaction_id(self, adapter: ManualMomoAdapter) -> None:
        with pytest.raises(PayloadValidationError):
            adapter.parse({"order_ref": "O3", "reported_amount": "50000", "verified_by": "ops"})

    @pytest.mark.unit
    def test_blank_transaction_id(self, adapter: ManualMomoAdapter) -> None:
        with pytest.raises(PayloadValidationError):
            adapter.parse(
                {"order_ref": "O3", "reported_amount": "50000", "transaction_id": "  ", "verified_by": "ops"}
            )


class TestCashOnDeliveryAdapter:
    """Courier cash confirmations."""

    @pytest.fixture
    def adapter(self) -> CashOnDeliveryAdapter:
        return CashOnDeliveryAdapter(default_currency="UGX")

    @pytest.mark.unit
    def test_receipt_number_drives_dedup_key(self, adapter: CashOnDeliveryAdapter) -> None:
        event = adapter.parse(
            {"order_ref": "O4", "amount_received": "49500", "confirmed_by": "rider-7", "receipt_number": "R-88"}
        )

        assert event.dedup_key == "cod:O4:R-88"
        assert event.external_reference == "COD-O4"
        assert event.outcome == PaymentOutcome.SUCCESSFUL
        assert event.source_channel == SourceChannel.CASH_CONFIRM
        assert event.payment_method == PaymentMethod.COD

    @pytest.mark.unit
    def test_without_receipt_same_submission_same_key(self, adapter: CashOnDeliveryAdapter) -> None:
        form = {"order_ref": "O4", "amount_received": "50000", "confirmed_by": "rider-7"}

        assert adapter.parse(form).dedup_key == adapter.parse(dict(form)).dedup_key

    @pytest.mark.unit
    def test_negative_amount_rejected(self, adapter: CashOnDeliveryAdapter) -> None:
        with pytest.raises(PayloadValidationError):
            adapter.parse({"order_ref": "O4", "amount_received": "-1", "confirmed_by": "rider-7"})
