"""
Reconciliation engine: the authoritative order state machine.

Every inbound surface (webhooks, polls, captures, admin forms, operational
actions) ends here. The engine validates a normalized event against the
ledger and moves the order with a conditional update, so the outcome is
safe under any interleaving of channels, processes and clocks.
"""
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.core.domain import (
    ACTION_TARGETS,
    CHANNEL_REQUIRED_METHOD,
    HUMAN_ASSERTED_METHODS,
    TERMINAL_STATUSES,
    OrderAction,
    OrderStatus,
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    RejectionReason,
    SourceChannel,
    TransitionResult,
    can_transition,
    utcnow,
)
from order_payments.core.ledger import OrderLedger, OrderNotFoundError, ReferenceInUseError
from order_payments.database.models import Order
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Reloads after losing a compare-and-set race before giving up.
MAX_CAS_ATTEMPTS = 2


class ReconciliationError(Exception):
    """Raised when an event cannot be evaluated against the ledger."""

    pass


class DispatchPlanner(Protocol):
    async def plan(self, db: AsyncSession, order_id: str, status: OrderStatus) -> int:
        ...


class ReconciliationEngine:
    """
    Applies payment events and operational actions to orders.

    The engine is the only component that writes ``orders.status``. It never
    auto-corrects financial disagreements: amount mismatches and reference
    conflicts are recorded as rejections for an operator to decide.
    """

    def __init__(
        self,
        ledger: Optional[OrderLedger] = None,
        dispatcher: Optional[DispatchPlanner] = None,
        cod_tolerance: Decimal = Decimal("1000"),
    ):
        """
        Initialize the engine.

        Args:
            ledger: Order ledger (a default one is created if omitted)
            dispatcher: Plans side effects in the transition's transaction
            cod_tolerance: Exclusive bound on the variance accepted on cash confirmation
        """
        self.ledger = ledger or OrderLedger()
        self.dispatcher = dispatcher
        self.cod_tolerance = Decimal(cod_tolerance)

    def expected_amount(self, order: Order, event: PaymentEvent) -> Tuple[Decimal, str]:
        """
        Amount and currency the event has to report.

        A redirect capture settles what the gateway was asked to charge, which
        differs from the order total when the gateway charges in its own
        currency.
        """
        if (
            event.source_channel == SourceChannel.REDIRECT_CAPTURE
            and order.charge_amount is not None
            and order.charge_currency
        ):
            return Decimal(order.charge_amount), order.charge_currency
        return Decimal(order.total), order.currency

    def amount_matches(self, order: Order, event: PaymentEvent) -> bool:
        """
        Check the reported amount against what the order expects.

        Digital channels must match exactly. Cash confirmation accepts a
        variance strictly below the tolerance for change and rounding.
        """
        expected, currency = self.expected_amount(order, event)
        if event.reported_currency != currency:
            return False
        delta = abs(Decimal(event.reported_amount) - expected)
        if event.source_channel == SourceChannel.CASH_CONFIRM:
            return delta < self.cod_tolerance
        return delta == 0

    async def apply(
        self,
        order_id: str,
        event: PaymentEvent,
        db: AsyncSession,
        admitted: bool = True,
    ) -> TransitionResult:
        """
        Apply one payment event to an order.

        Args:
            order_id: Order the event settles
            event: Normalized event from a channel adapter
            db: Database session (transaction owned by the caller)
            admitted: Whether the idempotency guard admitted the event

        Returns:
            TransitionResult: What happened to the order

        Raises:
            ReconciliationError: If the event names a different order, or the
                order keeps changing underneath the engine
        """
        if event.order_ref != order_id:
            raise ReconciliationError(
                f"Event for order {event.order_ref} applied to order {order_id}"
            )

        if not admitted:
            return self._finish(
                event,
                TransitionResult(
                    applied=False, order_id=order_id, event_id=event.event_id, duplicate=True
                ),
            )

        log = logger.bind(
            order_id=order_id,
            event_id=event.event_id,
            dedup_key=event.dedup_key,
            source_channel=event.source_channel.value,
            outcome=event.outcome.value,
        )

        order = await self.ledger.get_order(db, order_id)
        if order is None:
            log.warning("payment_event_order_not_found")
            await self.ledger.record_rejection(db, event, RejectionReason.ORDER_NOT_FOUND)
            return self._finish(
                event,
                TransitionResult(
                    applied=False,
                    order_id=order_id,
                    event_id=event.event_id,
                    rejection_reason=RejectionReason.ORDER_NOT_FOUND,
                ),
            )

        for _ in range(MAX_CAS_ATTEMPTS):
            current = OrderStatus(order.status)

            if event.outcome != PaymentOutcome.SUCCESSFUL:
                await self.ledger.record_evidence(db, event)
                log.info("payment_event_recorded_as_evidence", status=current.value)
                return self._finish(event, self._unchanged(order, event))

            if current in TERMINAL_STATUSES:
                log.warning(
                    "payment_event_rejected_already_terminal",
                    status=current.value,
                    reported_amount=str(event.reported_amount),
                )
                return await self._reject(db, order, event, RejectionReason.ALREADY_TERMINAL)

            if current == OrderStatus.PAID:
                if (
                    event.external_reference is None
                    or event.external_reference == order.external_reference
                ):
                    await self.ledger.record_evidence(db, event, note="already settled")
                    log.info("payment_event_already_settled")
                    return self._finish(event, self._unchanged(order, event))
                log.error(
                    "payment_event_reference_conflict",
                    alert=True,
                    status=current.value,
                    order_reference=order.external_reference,
                    event_reference=event.external_reference,
                )
                return await self._reject(db, order, event, RejectionReason.REFERENCE_CONFLICT)

            required = CHANNEL_REQUIRED_METHOD.get(event.source_channel)
            if required is not None and order.payment_method != required.value:
                log.warning(
                    "payment_event_rejected_method_mismatch",
                    order_method=order.payment_method,
                    required_method=required.value,
                )
                return await self._reject(db, order, event, RejectionReason.METHOD_MISMATCH)
            if required is None and PaymentMethod(order.payment_method) in HUMAN_ASSERTED_METHODS:
                log.warning(
                    "payment_event_rejected_method_mismatch",
                    order_method=order.payment_method,
                    event_method=event.payment_method.value,
                )
                return await self._reject(db, order, event, RejectionReason.METHOD_MISMATCH)

            if not self.amount_matches(order, event):
                expected, expected_currency = self.expected_amount(order, event)
                log.warning(
                    "payment_event_rejected_amount_mismatch",
                    expected_amount=str(expected),
                    expected_currency=expected_currency,
                    reported_amount=str(event.reported_amount),
                    reported_currency=event.reported_currency,
                )
                return await self._reject(
                    db, order, event, RejectionReason.AMOUNT_MISMATCH, expected=expected
                )

            if (
                order.external_reference is not None
                and event.external_reference is not None
                and order.external_reference != event.external_reference
            ):
                log.error(
                    "payment_event_reference_conflict",
                    alert=True,
                    status=current.value,
                    order_reference=order.external_reference,
                    event_reference=event.external_reference,
                )
                return await self._reject(db, order, event, RejectionReason.REFERENCE_CONFLICT)

            method: Optional[PaymentMethod] = None
            if required is None:
                method = event.payment_method
                if order.payment_method != method.value:
                    log.info(
                        "order_payment_method_changed",
                        previous_method=order.payment_method,
                        payment_method=method.value,
                    )

            try:
                won = await self.ledger.compare_and_set_status(
                    db,
                    order_id,
                    expected=OrderStatus.PENDING,
                    new=OrderStatus.PAID,
                    external_reference=event.external_reference,
                    payment_method=method,
                )
            except ReferenceInUseError:
                log.error(
                    "payment_event_reference_in_use",
                    alert=True,
                    event_reference=event.external_reference,
                )
                return await self._reject(db, order, event, RejectionReason.REFERENCE_CONFLICT)
            if won:
                await self.ledger.append_transition(
                    db,
                    order_id,
                    from_status=OrderStatus.PENDING,
                    to_status=OrderStatus.PAID,
                    event_id=event.event_id,
                    trigger=event.source_channel.value,
                    evidence=self._transition_evidence(event),
                )
                await self._plan(db, order_id, OrderStatus.PAID)
                log.info(
                    "order_paid",
                    amount=str(event.reported_amount),
                    currency=event.reported_currency,
                    external_reference=event.external_reference,
                )
                return self._finish(
                    event,
                    TransitionResult(
                        applied=True,
                        order_id=order_id,
                        event_id=event.event_id,
                        previous_status=OrderStatus.PENDING,
                        new_status=OrderStatus.PAID,
                    ),
                )

            log.info("order_compare_and_set_lost", expected=OrderStatus.PENDING.value)
            order = await self.ledger.require_order(db, order_id)

        raise ReconciliationError(f"Order {order_id} changed concurrently while applying event")

    async def apply_action(
        self,
        order_id: str,
        action: OrderAction,
        db: AsyncSession,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply an operational action (ship, deliver, cancel).

        Args:
            order_id: Target order
            action: Action to apply
            db: Database session (transaction owned by the caller)
            actor: Who requested the action
            reason: Free-text reason (stored as the cancellation reason)

        Returns:
            TransitionResult: ``applied`` when the order moved; a no-op if it
            is already in the target status; ``invalid-transition`` otherwise

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        target = ACTION_TARGETS[action]
        order = await self.ledger.require_order(db, order_id)
        log = logger.bind(order_id=order_id, action=action.value, actor=actor)

        for _ in range(MAX_CAS_ATTEMPTS):
            current = OrderStatus(order.status)
            event_id = f"action:{action.value}:{current.value}"

            if current == target:
                log.info("order_action_noop", status=current.value)
                return TransitionResult(
                    applied=False,
                    order_id=order_id,
                    previous_status=current,
                    new_status=current,
                )

            if not can_transition(current, target):
                log.warning("order_action_rejected", status=current.value, target=target.value)
                metrics.record_transition("action", False, RejectionReason.INVALID_TRANSITION.value)
                return TransitionResult(
                    applied=False,
                    order_id=order_id,
                    previous_status=current,
                    new_status=current,
                    rejection_reason=RejectionReason.INVALID_TRANSITION,
                )

            extra: Dict[str, Any] = {}
            if action == OrderAction.CANCEL:
                extra = {"cancellation_reason": reason, "cancelled_at": utcnow()}

            won = await self.ledger.compare_and_set_status(
                db, order_id, expected=current, new=target, extra_values=extra
            )
            if won:
                await self.ledger.append_transition(
                    db,
                    order_id,
                    from_status=current,
                    to_status=target,
                    event_id=event_id,
                    trigger=f"action:{action.value}",
                    evidence={"actor": actor, "reason": reason},
                )
                await self._plan(db, order_id, target)
                log.info("order_action_applied", previous_status=current.value, status=target.value)
                metrics.record_transition("action", True, None)
                return TransitionResult(
                    applied=True,
                    order_id=order_id,
                    event_id=event_id,
                    previous_status=current,
                    new_status=target,
                )

            order = await self.ledger.require_order(db, order_id)

        raise ReconciliationError(f"Order {order_id} changed concurrently while applying {action.value}")

    async def engage(
        self,
        order_id: str,
        payment_method: PaymentMethod,
        external_reference: str,
        db: AsyncSession,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Bind a pending order to the channel reference a customer is paying with.

        Args:
            details: Order columns recorded with the binding (``charge_amount``,
                ``charge_currency``, ``payer_phone``)

        Returns:
            bool: False if the order left ``pending`` or already carries a
            different reference

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.ledger.get_order(db, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        engaged = await self.ledger.engage_channel(
            db, order_id, payment_method, external_reference, extra_values=details
        )
        if engaged:
            logger.info(
                "order_channel_engaged",
                order_id=order_id,
                payment_method=payment_method.value,
                previous_method=order.payment_method,
                external_reference=external_reference,
            )
        else:
            logger.warning(
                "order_channel_engagement_refused",
                order_id=order_id,
                status=order.status,
                payment_method=payment_method.value,
                existing_reference=order.external_reference,
                requested_reference=external_reference,
            )
        return engaged

    async def _reject(
        self,
        db: AsyncSession,
        order: Order,
        event: PaymentEvent,
        reason: RejectionReason,
        expected: Optional[Decimal] = None,
    ) -> TransitionResult:
        await self.ledger.record_rejection(
            db,
            event,
            reason,
            expected_amount=expected,
            details={"order_status": order.status, "order_reference": order.external_reference},
        )
        current = OrderStatus(order.status)
        return self._finish(
            event,
            TransitionResult(
                applied=False,
                order_id=order.id,
                event_id=event.event_id,
                previous_status=current,
                new_status=current,
                rejection_reason=reason,
            ),
        )

    async def _plan(self, db: AsyncSession, order_id: str, status: OrderStatus) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.plan(db, order_id, status)

    @staticmethod
    def _unchanged(order: Order, event: PaymentEvent) -> TransitionResult:
        current = OrderStatus(order.status)
        return TransitionResult(
            applied=False,
            order_id=order.id,
            event_id=event.event_id,
            previous_status=current,
            new_status=current,
        )

    @staticmethod
    def _transition_evidence(event: PaymentEvent) -> Dict[str, Any]:
        return {
            "dedup_key": event.dedup_key,
            "reported_amount": str(event.reported_amount),
            "reported_currency": event.reported_currency,
            "external_reference": event.external_reference,
            "received_at": event.received_at.isoformat(),
            **event.evidence,
        }

    @staticmethod
    def _finish(event: PaymentEvent, result: TransitionResult) -> TransitionResult:
        reason = result.rejection_reason.value if result.rejection_reason else None
        if result.duplicate:
            reason = "duplicate"
        metrics.record_transition(event.source_channel.value, result.applied, reason)
        return result
