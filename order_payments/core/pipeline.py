"""
Settlement pipeline: guard, engine and dispatcher behind one call.

Admission and application share a single transaction. A crash before the
commit leaves neither the dedup record nor the transition behind, so the
channel's redelivery is processed normally. Side effects run after the
commit; if that immediate attempt fails the dispatch worker picks the
records up.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core.dispatch import SideEffectDispatcher
from order_payments.core.domain import (
    OrderAction,
    PaymentEvent,
    PaymentMethod,
    TransitionResult,
)
from order_payments.core.idempotency import IdempotencyGuard
from order_payments.core.reconciliation import ReconciliationEngine
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SettlementPipeline:
    """Single entry point used by every inbound surface."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        guard: IdempotencyGuard,
        engine: ReconciliationEngine,
        dispatcher: SideEffectDispatcher,
        dispatch_immediately: bool = True,
    ):
        self.session_factory = session_factory
        self.guard = guard
        self.engine = engine
        self.dispatcher = dispatcher
        self.dispatch_immediately = dispatch_immediately

    async def submit(self, event: PaymentEvent) -> TransitionResult:
        """
        Admit and apply one normalized event.

        Args:
            event: Event produced by a channel adapter

        Returns:
            TransitionResult: Result of the engine (``duplicate=True`` when
            the guard discarded the event)
        """
        metrics.record_event_received(event.source_channel.value, event.outcome.value)

        async with self.session_factory() as db:
            try:
                admission = await self.guard.admit(event, db)
                metrics.record_admission(
                    event.source_channel.value, "admitted" if admission.admitted else "duplicate"
                )
                result = await self.engine.apply(
                    event.order_ref, event, db, admitted=admission.admitted
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(
            "payment_event_processed",
            order_id=result.order_id,
            event_id=result.event_id,
            source_channel=event.source_channel.value,
            applied=result.applied,
            duplicate=result.duplicate,
            rejection_reason=result.rejection_reason.value if result.rejection_reason else None,
        )

        await self._after_commit(result)
        return result

    async def run_action(
        self,
        order_id: str,
        action: OrderAction,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """Apply an operational action (ship, deliver, cancel) and dispatch its effects."""
        async with self.session_factory() as db:
            try:
                result = await self.engine.apply_action(
                    order_id, action, db, actor=actor, reason=reason
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        await self._after_commit(result)
        return result

    async def engage(
        self,
        order_id: str,
        payment_method: PaymentMethod,
        external_reference: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Bind a pending order to a channel reference in its own transaction."""
        async with self.session_factory() as db:
            try:
                engaged = await self.engine.engage(
                    order_id, payment_method, external_reference, db, details=details
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return engaged

    async def _after_commit(self, result: TransitionResult) -> None:
        if not (result.applied and self.dispatch_immediately and result.new_status):
            return
        try:
            await self.dispatcher.dispatch(result.order_id, result.new_status)
        except Exception as e:
            # Records stay claimable; the dispatch worker retries them.
            logger.error(
                "side_effect_immediate_dispatch_failed",
                order_id=result.order_id,
                status=result.new_status.value,
                error=str(e),
            )
