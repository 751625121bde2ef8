"""
Status poller for poll-based channels.

Drives ``PesapalStatusAdapter`` for every pending order with a tracking id,
feeding the resulting events through the settlement pipeline. No database
transaction is held open while the gateway is being called.
"""
import asyncio
import time
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.channels.base import ChannelError, GatewayUnavailableError
from order_payments.channels.pesapal import PesapalStatusAdapter, PollResult
from order_payments.core.domain import OrderStatus
from order_payments.core.ledger import OrderLedger, OrderNotFoundError
from order_payments.core.pipeline import SettlementPipeline
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StatusPoller:
    """
    Polls engaged orders and applies what the gateway reports.

    Gateway outages are never turned into ``failed`` outcomes; the order is
    simply polled again on the next cycle.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapter: PesapalStatusAdapter,
        pipeline: SettlementPipeline,
        ledger: Optional[OrderLedger] = None,
        batch_size: int = 50,
        poll_interval_seconds: float = 60.0,
    ):
        self.session_factory = session_factory
        self.adapter = adapter
        self.pipeline = pipeline
        self.ledger = ledger or OrderLedger()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

    async def track(self, order_id: str, tracking_id: str) -> None:
        """Register a tracking id for ``order_id`` so the scheduler polls it."""
        async with self.session_factory() as db:
            await self.ledger.track_poll(db, order_id, tracking_id)
            await db.commit()

    async def poll_order(
        self, order_id: str, tracking_id: Optional[str] = None
    ) -> Optional[PollResult]:
        """
        Poll one order now.

        Args:
            order_id: Order to poll
            tracking_id: Gateway tracking id; registered if the order has none yet

        Returns:
            Optional[PollResult]: None when the order is no longer pending or
            has no tracking id

        Raises:
            OrderNotFoundError: If the order does not exist
            GatewayUnavailableError: If the gateway could not be reached
        """
        async with self.session_factory() as db:
            order = await self.ledger.get_order(db, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            state = await self.ledger.get_poll_state(db, order_id)
            if state is None and tracking_id:
                state = await self.ledger.track_poll(db, order_id, tracking_id)
                await db.commit()

            if state is None:
                return None
            if order.status != OrderStatus.PENDING.value:
                logger.debug("poll_skipped_not_pending", order_id=order_id, status=order.status)
                return None
            tracking = state.tracking_id
            last_known = state.last_status

        result = await self.adapter.poll(order_id, tracking, last_known=last_known)
        if result.event is not None:
            await self.pipeline.submit(result.event)

        async with self.session_factory() as db:
            await self.ledger.record_poll(db, order_id, result.status_key)
            await db.commit()
        return result

    async def run_cycle(self) -> Dict[str, int]:
        """
        Poll one batch of pending orders.

        Returns:
            Dict[str, int]: Counts of polled, changed and failed orders
        """
        start = time.time()
        async with self.session_factory() as db:
            states = await self.ledger.pollable_orders(db, limit=self.batch_size)
            order_ids = [state.order_id for state in states]

        counts = {"polled": 0, "events": 0, "unavailable": 0, "errors": 0}
        for order_id in order_ids:
            try:
                result = await self.poll_order(order_id)
            except GatewayUnavailableError as e:
                counts["unavailable"] += 1
                logger.warning("poll_gateway_unavailable", order_id=order_id, error=str(e))
                continue
            except (ChannelError, OrderNotFoundError) as e:
                counts["errors"] += 1
                logger.error("poll_order_failed", order_id=order_id, error=str(e))
                continue

            if result is not None:
                counts["polled"] += 1
                if result.event is not None:
                    counts["events"] += 1

        metrics.record_poll_cycle(time.time() - start)
        logger.info("poll_cycle_completed", batch=len(order_ids), **counts)
        return counts

    async def start(self) -> None:
        """Poll until ``stop`` is called."""
        self._running = True
        logger.info("status_poller_started", interval_seconds=self.poll_interval_seconds)

        try:
            while self._running:
                try:
                    await self.run_cycle()
                except Exception as e:
                    logger.error("status_poller_error", error=str(e))
                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("status_poller_stopped")

    def stop(self) -> None:
        self._running = False
        logger.info("status_poller_stop_requested")
