"""SQLAlchemy database models for the order payment reconciliation core."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGSERIAL on PostgreSQL, rowid alias on SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back in UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders table.

    The single shared mutable record of the system. ``status`` and
    ``external_reference`` are only ever written through conditional updates
    issued by the reconciliation engine.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="UGX")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="cod")
    external_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    # What the engaged gateway was asked to collect, when it charges in
    # another currency than the order total
    charge_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    charge_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="non_negative_total"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'shipped', 'delivered', 'cancelled')",
            name="valid_order_status",
        ),
        CheckConstraint(
            "payment_method IN ('cod', 'mtn_momo', 'airtel_money', 'paypal', "
            "'pesapal', 'manual_momo')",
            name="valid_payment_method",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_orders_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, status={self.status}, total={self.total}, "
            f"method={self.payment_method})>"
        )


class OrderTransition(Base):
    """
    Append-only transition history.

    One row per applied status change. The unique ``(order_id, event_id)``
    pair makes a second application of the same event impossible.
    """

    __tablename__ = "order_transitions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False, index=True
    )
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    evidence: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    applied_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        UniqueConstraint("order_id", "event_id", name="uq_transition_order_event"),
    )

    def __repr__(self) -> str:
        """String representation of OrderTransition."""
        return (
            f"<OrderTransition(order_id={self.order_id}, "
            f"{self.from_status}->{self.to_status}, event_id={self.event_id})>"
        )


class DedupRecord(Base):
    """
    First-seen marker for one real-world settlement.

    The primary key on ``dedup_key`` is the admission mechanism: a second
    insert of the same key fails with an integrity error.
    """

    __tablename__ = "dedup_records"

    dedup_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    order_ref: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_channel: Mapped[str] = mapped_column(String(32), nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        """String representation of DedupRecord."""
        return f"<DedupRecord(key={self.dedup_key}, order_ref={self.order_ref})>"


class PaymentRejection(Base):
    """
    Operator backlog of admitted events the engine refused to apply.

    Amount mismatches and reference conflicts wait here for a human decision.
    """

    __tablename__ = "payment_rejections"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    source_channel: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    expected_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    reported_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    reported_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=func.now()
    )

    __table_args__ = (
        Index("idx_rejections_reason_resolved", "reason", "resolved"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentRejection."""
        return (
            f"<PaymentRejection(id={self.id}, order_id={self.order_id}, "
            f"reason={self.reason}, resolved={self.resolved})>"
        )


class PaymentEvidence(Base):
    """Admitted events that were recorded without changing order status."""

    __tablename__ = "payment_evidence"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_channel: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    reported_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    reported_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvidence."""
        return f"<PaymentEvidence(order_id={self.order_id}, outcome={self.outcome})>"


class SideEffectDispatch(Base):
    """
    Durable per-transition dispatch marker.

    Written in the same transaction as the status change it belongs to, then
    claimed and executed by the dispatcher. Unique per
    ``(order_id, status, action)`` so an action fires at most once per
    transition.
    """

    __tablename__ = "side_effect_dispatches"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("order_id", "status", "action", name="uq_dispatch_transition_action"),
        CheckConstraint(
            "state IN ('pending', 'in_progress', 'succeeded', 'failed', 'abandoned')",
            name="valid_dispatch_state",
        ),
        Index("idx_dispatch_state_next_attempt", "state", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        """String representation of SideEffectDispatch."""
        return (
            f"<SideEffectDispatch(order_id={self.order_id}, status={self.status}, "
            f"action={self.action}, state={self.state})>"
        )


class ChannelPollState(Base):
    """Last status a poll channel reported for an engaged order."""

    __tablename__ = "channel_poll_state"

    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), primary_key=True
    )
    tracking_id: Mapped[str] = mapped_column(String(255), nullable=False)
    last_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    poll_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_polled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        """String representation of ChannelPollState."""
        return (
            f"<ChannelPollState(order_id={self.order_id}, "
            f"tracking_id={self.tracking_id}, last_status={self.last_status})>"
        )
