"""
Order ledger: persistence operations for orders and their history.

Every status write is a conditional UPDATE guarded by the expected current
status, so concurrent writers in different processes can never both win.
The reconciliation engine is the only caller of the status-writing methods.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.core.domain import (
    OrderStatus,
    PaymentEvent,
    PaymentMethod,
    RejectionReason,
    utcnow,
)
from order_payments.database.models import (
    ChannelPollState,
    Order,
    OrderTransition,
    PaymentEvidence,
    PaymentRejection,
)

logger = structlog.get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger operations."""

    pass


class OrderNotFoundError(LedgerError):
    """Raised when an order id does not exist."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class DuplicateOrderError(LedgerError):
    """Raised when creating an order whose id already exists."""

    pass


class ReferenceInUseError(LedgerError):
    """Raised when an external reference already belongs to another order."""

    def __init__(self, external_reference: str):
        super().__init__(f"Reference {external_reference} is bound to another order")
        self.external_reference = external_reference


def new_order_id() -> str:
    """Opaque order identifier."""
    return uuid.uuid4().hex[:24]


class OrderLedger:
    """Reads and conditional writes against the orders tables."""

    async def create_order(
        self,
        db: AsyncSession,
        total: Decimal,
        currency: str,
        payment_method: PaymentMethod = PaymentMethod.COD,
        order_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        customer_email: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Create an order in ``pending`` at checkout.

        Args:
            db: Database session
            total: Order total in the settlement currency
            currency: ISO currency code
            payment_method: Channel chosen at checkout
            order_id: Optional explicit id (generated when omitted)

        Returns:
            Order: The persisted order

        Raises:
            DuplicateOrderError: If the id is already taken
        """
        now = utcnow()
        order = Order(
            id=order_id or new_order_id(),
            status=OrderStatus.PENDING.value,
            total=Decimal(total),
            currency=currency.upper(),
            payment_method=PaymentMethod(payment_method).value,
            customer_name=customer_name,
            customer_phone=customer_phone,
            customer_email=customer_email,
            notes=notes,
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(order)
        except IntegrityError as e:
            raise DuplicateOrderError(f"Order {order.id} already exists") from e

        logger.info(
            "order_created",
            order_id=order.id,
            total=str(order.total),
            currency=order.currency,
            payment_method=order.payment_method,
        )
        return order

    async def get_order(self, db: AsyncSession, order_id: str) -> Optional[Order]:
        """Load an order, always refreshing any cached identity."""
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_order(self, db: AsyncSession, order_id: str) -> Order:
        """Load an order or raise OrderNotFoundError."""
        order = await self.get_order(db, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def compare_and_set_status(
        self,
        db: AsyncSession,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        external_reference: Optional[str] = None,
        payment_method: Optional[PaymentMethod] = None,
        extra_values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move ``order_id`` from ``expected`` to ``new`` if nobody beat us to it.

        When ``external_reference`` is given, the write also requires the
        stored reference to be empty or equal, and records it if empty.

        Returns:
            bool: True if exactly this call performed the transition

        Raises:
            ReferenceInUseError: If the reference is bound to a different order
        """
        conditions = [Order.id == order_id, Order.status == expected.value]
        values: Dict[str, Any] = {
            "status": new.value,
            "version": Order.version + 1,
            "updated_at": utcnow(),
        }
        if external_reference is not None:
            conditions.append(
                or_(
                    Order.external_reference.is_(None),
                    Order.external_reference == external_reference,
                )
            )
            values["external_reference"] = func.coalesce(
                Order.external_reference, external_reference
            )
        if payment_method is not None:
            values["payment_method"] = payment_method.value
        if extra_values:
            values.update(extra_values)

        stmt = (
            update(Order)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with db.begin_nested():
                result = await db.execute(stmt)
        except IntegrityError as e:
            raise ReferenceInUseError(external_reference or "") from e
        return result.rowcount == 1

    async def engage_channel(
        self,
        db: AsyncSession,
        order_id: str,
        payment_method: PaymentMethod,
        external_reference: str,
        extra_values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record which channel and reference a pending order is being paid with.

        First writer wins: the update only succeeds while the order is pending
        and its reference is empty or already equal. ``extra_values`` carries
        channel details written alongside (charge amount, payer phone).
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING.value,
                or_(
                    Order.external_reference.is_(None),
                    Order.external_reference == external_reference,
                ),
            )
            .values(
                external_reference=external_reference,
                payment_method=payment_method.value,
                updated_at=utcnow(),
                **(extra_values or {}),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with db.begin_nested():
                result = await db.execute(stmt)
        except IntegrityError:
            return False
        return result.rowcount == 1

    async def append_transition(
        self,
        db: AsyncSession,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        event_id: str,
        trigger: str,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> OrderTransition:
        """Append one row to the order's transition history."""
        transition = OrderTransition(
            order_id=order_id,
            from_status=from_status.value,
            to_status=to_status.value,
            event_id=event_id,
            trigger=trigger,
            evidence=evidence or {},
            applied_at=utcnow(),
        )
        db.add(transition)
        await db.flush()
        return transition

    async def get_history(self, db: AsyncSession, order_id: str) -> List[OrderTransition]:
        """Transition history in application order."""
        stmt = (
            select(OrderTransition)
            .where(OrderTransition.order_id == order_id)
            .order_by(OrderTransition.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def record_evidence(
        self,
        db: AsyncSession,
        event: PaymentEvent,
        note: Optional[str] = None,
    ) -> PaymentEvidence:
        """Keep an admitted event that did not move the order."""
        details = dict(event.evidence)
        if note:
            details["note"] = note
        evidence = PaymentEvidence(
            order_id=event.order_ref,
            event_id=event.event_id,
            source_channel=event.source_channel.value,
            outcome=event.outcome.value,
            reported_amount=event.reported_amount,
            reported_currency=event.reported_currency,
            external_reference=event.external_reference,
            details=details,
            created_at=utcnow(),
        )
        db.add(evidence)
        await db.flush()
        return evidence

    async def list_evidence(self, db: AsyncSession, order_id: str) -> List[PaymentEvidence]:
        stmt = (
            select(PaymentEvidence)
            .where(PaymentEvidence.order_id == order_id)
            .order_by(PaymentEvidence.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def record_rejection(
        self,
        db: AsyncSession,
        event: PaymentEvent,
        reason: RejectionReason,
        expected_amount: Optional[Decimal] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> PaymentRejection:
        """Add an event to the operator backlog."""
        rejection = PaymentRejection(
            order_id=event.order_ref,
            event_id=event.event_id,
            dedup_key=event.dedup_key,
            source_channel=event.source_channel.value,
            reason=reason.value,
            expected_amount=expected_amount,
            reported_amount=event.reported_amount,
            reported_currency=event.reported_currency,
            details={**event.evidence, **(details or {})},
            resolved=False,
            created_at=utcnow(),
        )
        db.add(rejection)
        await db.flush()
        return rejection

    async def list_rejections(
        self,
        db: AsyncSession,
        reason: Optional[RejectionReason] = None,
        resolved: Optional[bool] = False,
        limit: int = 100,
    ) -> List[PaymentRejection]:
        """
        Query the rejection backlog.

        Args:
            reason: Only this reason (all reasons when None)
            resolved: Filter on resolution state (both when None)
            limit: Max rows returned
        """
        stmt = select(PaymentRejection)
        if reason is not None:
            stmt = stmt.where(PaymentRejection.reason == reason.value)
        if resolved is not None:
            stmt = stmt.where(PaymentRejection.resolved == resolved)
        stmt = stmt.order_by(PaymentRejection.id.desc()).limit(limit)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def count_open_rejections(self, db: AsyncSession) -> Dict[str, int]:
        """Unresolved rejections per reason."""
        stmt = (
            select(PaymentRejection.reason, func.count(PaymentRejection.id))
            .where(PaymentRejection.resolved == False)  # noqa: E712
            .group_by(PaymentRejection.reason)
        )
        result = await db.execute(stmt)
        return {reason: count for reason, count in result.all()}

    async def resolve_rejection(
        self, db: AsyncSession, rejection_id: int, note: str
    ) -> Optional[PaymentRejection]:
        """Mark a backlog entry as handled by an operator."""
        rejection = await db.get(PaymentRejection, rejection_id)
        if rejection is None:
            return None
        rejection.resolved = True
        rejection.resolved_at = utcnow()
        rejection.resolution_note = note
        await db.flush()
        logger.info(
            "payment_rejection_resolved",
            rejection_id=rejection_id,
            order_id=rejection.order_id,
            reason=rejection.reason,
        )
        return rejection

    async def track_poll(
        self, db: AsyncSession, order_id: str, tracking_id: str
    ) -> ChannelPollState:
        """Start (or restart) polling an order under a gateway tracking id."""
        state = await db.get(ChannelPollState, order_id)
        if state is None:
            state = ChannelPollState(order_id=order_id, tracking_id=tracking_id, poll_count=0)
            db.add(state)
        elif state.tracking_id != tracking_id:
            state.tracking_id = tracking_id
            state.last_status = None
        await db.flush()
        return state

    async def get_poll_state(
        self, db: AsyncSession, order_id: str
    ) -> Optional[ChannelPollState]:
        return await db.get(ChannelPollState, order_id)

    async def record_poll(
        self, db: AsyncSession, order_id: str, last_status: Optional[str]
    ) -> None:
        """Remember what the poll channel reported most recently."""
        stmt = (
            update(ChannelPollState)
            .where(ChannelPollState.order_id == order_id)
            .values(
                last_status=last_status,
                poll_count=ChannelPollState.poll_count + 1,
                last_polled_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

    async def pollable_orders(self, db: AsyncSession, limit: int = 50) -> List[ChannelPollState]:
        """Pending orders with a poll channel engaged, least recently polled first."""
        stmt = (
            select(ChannelPollState)
            .join(Order, Order.id == ChannelPollState.order_id)
            .where(Order.status == OrderStatus.PENDING.value)
            .order_by(ChannelPollState.last_polled_at.is_not(None), ChannelPollState.last_polled_at)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def pending_manual_transfers(self, db: AsyncSession, limit: int = 100) -> List[Order]:
        """Manual MoMo orders with a submitted transaction id awaiting verification."""
        stmt = (
            select(Order)
            .where(
                Order.payment_method == PaymentMethod.MANUAL_MOMO.value,
                Order.status == OrderStatus.PENDING.value,
                Order.external_reference.is_not(None),
            )
            .order_by(Order.updated_at.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
