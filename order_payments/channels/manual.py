"""
Manual mobile money entry.

Customers pay to the merchant's MoMo number directly and an admin verifies
the transfer by hand. The admin's entered amount is passed through as-is so
the engine can compare it against the order total.
"""
from typing import Any, Mapping

import structlog

from order_payments.channels.base import ChannelAdapter
from order_payments.channels.schemas import ManualMomoConfirmation
from order_payments.core.domain import (
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    SourceChannel,
)

logger = structlog.get_logger(__name__)


class ManualMomoAdapter(ChannelAdapter):
    """Manual-entry adapter for admin-verified MoMo transfers."""

    name = "manual_momo"
    source_channel = SourceChannel.MANUAL_ENTRY

    def __init__(self, default_currency: str = "UGX"):
        self.default_currency = default_currency

    def parse(self, form: Mapping[str, Any]) -> PaymentEvent:
        """
        Normalize an admin confirmation form.

        Raises:
            PayloadValidationError: If a required field is missing or invalid
        """
        confirmation = self._validate(ManualMomoConfirmation, dict(form))
        outcome = PaymentOutcome.SUCCESSFUL if confirmation.approved else PaymentOutcome.FAILED

        logger.info(
            "manual_payment_entered",
            order_id=confirmation.order_ref,
            transaction_id=confirmation.transaction_id,
            verified_by=confirmation.verified_by,
            approved=confirmation.approved,
        )
        return self._event(
            dedup_key=f"manual_momo:{confirmation.transaction_id}",
            order_ref=confirmation.order_ref,
            reported_amount=confirmation.reported_amount,
            reported_currency=confirmation.currency or self.default_currency,
            outcome=outcome,
            source_channel=self.source_channel,
            payment_method=PaymentMethod.MANUAL_MOMO,
            external_reference=confirmation.transaction_id,
            evidence={
                "verified_by": confirmation.verified_by,
                "evidence_note": confirmation.evidence_note,
                "phone_number": confirmation.phone_number,
                "approved": confirmation.approved,
            },
        )
