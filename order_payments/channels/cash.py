"""Cash on delivery confirmation."""
from typing import Any, Mapping

import structlog

from order_payments.channels.base import ChannelAdapter
from order_payments.channels.schemas import CashConfirmation
from order_payments.core.domain import (
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    SourceChannel,
    content_hash,
)

logger = structlog.get_logger(__name__)


class CashOnDeliveryAdapter(ChannelAdapter):
    """
    Cash-confirm adapter.

    Without a receipt number the dedup key falls back to a hash of the
    confirmation's content, so a double-submitted form is still one event.
    """

    name = "cod"
    source_channel = SourceChannel.CASH_CONFIRM

    def __init__(self, default_currency: str = "UGX"):
        self.default_currency = default_currency

    def parse(self, form: Mapping[str, Any]) -> PaymentEvent:
        """
        Normalize a courier or admin cash confirmation.

        Raises:
            PayloadValidationError: If a required field is missing or invalid
        """
        confirmation = self._validate(CashConfirmation, dict(form))
        currency = (confirmation.currency or self.default_currency).upper()

        receipt = confirmation.receipt_number or content_hash(
            confirmation.order_ref,
            confirmation.amount_received,
            currency,
            confirmation.confirmed_by,
        )

        logger.info(
            "cash_confirmation_entered",
            order_id=confirmation.order_ref,
            confirmed_by=confirmation.confirmed_by,
            has_receipt=bool(confirmation.receipt_number),
        )
        return self._event(
            dedup_key=f"cod:{confirmation.order_ref}:{receipt}",
            order_ref=confirmation.order_ref,
            reported_amount=confirmation.amount_received,
            reported_currency=currency,
            outcome=PaymentOutcome.SUCCESSFUL,
            source_channel=self.source_channel,
            payment_method=PaymentMethod.COD,
            external_reference=f"COD-{confirmation.order_ref}",
            evidence={
                "confirmed_by": confirmation.confirmed_by,
                "receipt_number": confirmation.receipt_number,
                "notes": confirmation.notes,
            },
        )
