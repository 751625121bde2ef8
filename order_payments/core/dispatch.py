"""
Side-effect dispatcher.

Durable per-transition dispatch records, in the spirit of a transactional
outbox: the engine plans one ``SideEffectDispatch`` row per action in the
same transaction as the status change, then the dispatcher claims and runs
them. Rows are unique per ``(order_id, status, action)`` so no action can
fire twice for one transition, and a crash between commit and dispatch is
recovered by the sweep.
"""
import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core.domain import OrderStatus, utcnow
from order_payments.database.models import Order, OrderTransition, SideEffectDispatch
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SideEffectAction(str, Enum):
    """Post-transition actions."""

    SMS = "sms"
    EMAIL = "email"
    INVENTORY_RELEASE = "inventory_release"


class DispatchState(str, Enum):
    """Lifecycle of one dispatch record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


SIDE_EFFECT_PLAN: Mapping[OrderStatus, Tuple[SideEffectAction, ...]] = {
    OrderStatus.PAID: (SideEffectAction.SMS, SideEffectAction.EMAIL),
    OrderStatus.CANCELLED: (SideEffectAction.INVENTORY_RELEASE, SideEffectAction.SMS),
    OrderStatus.SHIPPED: (SideEffectAction.SMS,),
    OrderStatus.DELIVERED: (SideEffectAction.SMS, SideEffectAction.EMAIL),
}

ActionHandler = Callable[[Order, OrderStatus], Awaitable[None]]


class SideEffectDispatcher:
    """
    Plans, claims and executes side effects for applied transitions.

    Each action is isolated: a failing SMS never blocks the email or the
    inventory release, and no failure ever touches the order's status.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: Optional[Mapping[SideEffectAction, ActionHandler]] = None,
        max_attempts: int = 5,
        base_delay_seconds: float = 30.0,
        claim_timeout_seconds: int = 300,
        batch_size: int = 100,
    ):
        """
        Initialize the dispatcher.

        Args:
            session_factory: Factory for the dispatcher's own sessions
            handlers: Callable per action, receiving the order and new status
            max_attempts: Attempts before a record is abandoned
            base_delay_seconds: First retry delay, doubled per attempt
            claim_timeout_seconds: After this an in-progress claim is stale
            batch_size: Records processed per sweep
        """
        self.session_factory = session_factory
        self.handlers: Dict[SideEffectAction, ActionHandler] = dict(handlers or {})
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.batch_size = batch_size

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next attempt after ``attempts`` failures."""
        return timedelta(seconds=self.base_delay_seconds * (2 ** max(attempts - 1, 0)))

    async def plan(self, db: AsyncSession, order_id: str, status: OrderStatus) -> int:
        """
        Insert the dispatch records for a transition, skipping existing ones.

        Runs inside the caller's transaction.

        Returns:
            int: Number of records created
        """
        created = 0
        now = utcnow()
        for action in SIDE_EFFECT_PLAN.get(status, ()):
            record = SideEffectDispatch(
                order_id=order_id,
                status=status.value,
                action=action.value,
                state=DispatchState.PENDING.value,
                attempts=0,
                next_attempt_at=now,
                created_at=now,
            )
            try:
                async with db.begin_nested():
                    db.add(record)
            except IntegrityError:
                logger.debug(
                    "side_effect_already_planned",
                    order_id=order_id,
                    status=status.value,
                    action=action.value,
                )
                continue
            created += 1

        if created:
            logger.info(
                "side_effects_planned",
                order_id=order_id,
                status=status.value,
                count=created,
            )
        return created

    async def dispatch(self, order_id: str, status: OrderStatus) -> Dict[str, str]:
        """
        Run the planned actions for one transition right away.

        Returns:
            Dict[str, str]: Final state per action that was claimed
        """
        async with self.session_factory() as db:
            stmt = select(SideEffectDispatch.id).where(
                SideEffectDispatch.order_id == order_id,
                SideEffectDispatch.status == status.value,
            )
            dispatch_ids = list((await db.execute(stmt)).scalars().all())

        outcomes: Dict[str, str] = {}
        for dispatch_id in dispatch_ids:
            outcome = await self.run_one(dispatch_id)
            if outcome is not None:
                outcomes[outcome[0]] = outcome[1]
        return outcomes

    async def dispatch_pending(self, now: Optional[datetime] = None) -> int:
        """
        Run every due record: pending, failed with backoff elapsed, or claimed
        by a worker that never finished.

        Returns:
            int: Number of records that were claimed and executed
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            stmt = (
                select(SideEffectDispatch.id)
                .where(self._claimable(now))
                .order_by(SideEffectDispatch.next_attempt_at)
                .limit(self.batch_size)
            )
            dispatch_ids = list((await db.execute(stmt)).scalars().all())

        if not dispatch_ids:
            return 0

        logger.info("side_effect_sweep_started", due=len(dispatch_ids))
        processed = 0
        for dispatch_id in dispatch_ids:
            if await self.run_one(dispatch_id, now=now) is not None:
                processed += 1

        logger.info("side_effect_sweep_completed", due=len(dispatch_ids), processed=processed)
        return processed

    async def recover(self, since: datetime) -> int:
        """
        Re-plan dispatch records for transitions applied since ``since``.

        Covers transitions whose markers were lost; planning is idempotent so
        existing records are left alone.

        Returns:
            int: Number of records created
        """
        created = 0
        async with self.session_factory() as db:
            stmt = (
                select(OrderTransition.order_id, OrderTransition.to_status)
                .where(OrderTransition.applied_at >= since)
                .distinct()
            )
            transitions = (await db.execute(stmt)).all()
            for order_id, to_status in transitions:
                created += await self.plan(db, order_id, OrderStatus(to_status))
            await db.commit()

        if created:
            logger.warning("side_effects_recovered", count=created, since=since.isoformat())
        return created

    async def run_one(
        self, dispatch_id: int, now: Optional[datetime] = None
    ) -> Optional[Tuple[str, str]]:
        """
        Claim one record, run its action, and store the outcome.

        Returns:
            Optional[Tuple[str, str]]: ``(action, final_state)``, or None if
            another worker holds the record or it is not due
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            claim = (
                update(SideEffectDispatch)
                .where(SideEffectDispatch.id == dispatch_id, self._claimable(now))
                .values(
                    state=DispatchState.IN_PROGRESS.value,
                    claimed_at=now,
                    attempts=SideEffectDispatch.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(claim)
            if result.rowcount != 1:
                await db.rollback()
                return None

            record = await db.get(SideEffectDispatch, dispatch_id, populate_existing=True)
            order = await db.get(Order, record.order_id)
            await db.commit()

        action = SideEffectAction(record.action)
        status = OrderStatus(record.status)
        log = logger.bind(
            dispatch_id=dispatch_id,
            order_id=record.order_id,
            status=status.value,
            action=action.value,
            attempt=record.attempts,
        )

        error: Optional[str] = None
        handler = self.handlers.get(action)
        if handler is None:
            error = f"No handler registered for {action.value}"
        else:
            try:
                await handler(order, status)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

        finished = utcnow()
        if error is None:
            values = {
                "state": DispatchState.SUCCEEDED.value,
                "completed_at": finished,
                "last_error": None,
            }
            log.info("side_effect_succeeded")
        elif record.attempts >= self.max_attempts:
            values = {"state": DispatchState.ABANDONED.value, "last_error": error}
            log.error("side_effect_abandoned", error=error)
        else:
            next_attempt = finished + self.backoff(record.attempts)
            values = {
                "state": DispatchState.FAILED.value,
                "last_error": error,
                "next_attempt_at": next_attempt,
            }
            log.error("side_effect_failed", error=error, next_attempt_at=next_attempt.isoformat())

        async with self.session_factory() as db:
            await db.execute(
                update(SideEffectDispatch)
                .where(SideEffectDispatch.id == dispatch_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        metrics.record_dispatch(action.value, values["state"])
        return action.value, values["state"]

    async def list_failed(self, db: AsyncSession, limit: int = 100) -> List[SideEffectDispatch]:
        """Records in ``failed`` or ``abandoned`` state, newest first."""
        stmt = (
            select(SideEffectDispatch)
            .where(
                SideEffectDispatch.state.in_(
                    [DispatchState.FAILED.value, DispatchState.ABANDONED.value]
                )
            )
            .order_by(SideEffectDispatch.id.desc())
            .limit(limit)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def list_for_order(self, db: AsyncSession, order_id: str) -> List[SideEffectDispatch]:
        stmt = (
            select(SideEffectDispatch)
            .where(SideEffectDispatch.order_id == order_id)
            .order_by(SideEffectDispatch.id)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def get_backlog_count(self) -> int:
        """Records not yet in a final state."""
        async with self.session_factory() as db:
            stmt = select(func.count(SideEffectDispatch.id)).where(
                SideEffectDispatch.state.in_(
                    [
                        DispatchState.PENDING.value,
                        DispatchState.IN_PROGRESS.value,
                        DispatchState.FAILED.value,
                    ]
                )
            )
            return int((await db.execute(stmt)).scalar() or 0)

    def _claimable(self, now: datetime) -> object:
        return or_(
            and_(
                SideEffectDispatch.state.in_(
                    [DispatchState.PENDING.value, DispatchState.FAILED.value]
                ),
                SideEffectDispatch.next_attempt_at <= now,
            ),
            and_(
                SideEffectDispatch.state == DispatchState.IN_PROGRESS.value,
                SideEffectDispatch.claimed_at < now - self.claim_timeout,
            ),
        )
