"""
Settlement pipeline tests: guard, engine and dispatcher together.
"""
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core import (
    IdempotencyGuard,
    OrderAction,
    OrderLedger,
    OrderStatus,
    PaymentMethod,
    PaymentOutcome,
    RejectionReason,
    SettlementPipeline,
    SideEffectAction,
)


class TestSettlementPipeline:
    """End-to-end behaviour of one event through the whole core."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_retry_settles_once(
        self,
        pipeline: SettlementPipeline,
        recorder: Any,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        """A retried webhook pays the order once and notifies once."""
        await make_order("O1", total="120000")
        event = make_event("O1", "120000", dedup_key="tx-1", external_reference="ORDER-O1-1")

        first = await pipeline.submit(event)
        second = await pipeline.submit(event)

        assert first.applied is True
        assert first.new_status == OrderStatus.PAID
        assert second.applied is False
        assert second.duplicate is True
        assert (await load_order("O1")).status == OrderStatus.PAID.value
        assert recorder.count(SideEffectAction.SMS, "paid") == 1
        assert recorder.count(SideEffectAction.EMAIL, "paid") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_webhook_on_delivered_order(
        self,
        pipeline: SettlementPipeline,
        recorder: Any,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        await make_order("O2", total="50000")
        await pipeline.submit(make_event("O2", dedup_key="pay-O2", external_reference="R-O2"))
        await pipeline.run_action("O2", OrderAction.SHIP, actor="ops")
        await pipeline.run_action("O2", OrderAction.DELIVER, actor="ops")
        calls_before = len(recorder.calls)

        result = await pipeline.submit(make_event("O2", "50000", dedup_key="late-O2"))

        assert result.applied is False
        assert result.rejection_reason == RejectionReason.ALREADY_TERMINAL
        assert (await load_order("O2")).status == OrderStatus.DELIVERED.value
        assert len(recorder.calls) == calls_before

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_n_deliveries_one_application(
        self,
        pipeline: SettlementPipeline,
        make_order: Any,
        make_event: Any,
    ) -> None:
        await make_order("O-n")
        event = make_event("O-n", dedup_key="tx-n", external_reference="ORDER-O-n-1")

        results = [await pipeline.submit(event) for _ in range(5)]

        assert [r.applied for r in results] == [True, False, False, False, False]
        assert all(r.duplicate for r in results[1:])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_of_rejected_event_stays_rejected_once(
        self,
        pipeline: SettlementPipeline,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: OrderLedger,
        make_order: Any,
        make_event: Any,
    ) -> None:
        await make_order("O-short")
        event = make_event("O-short", "49000", dedup_key="tx-short")

        first = await pipeline.submit(event)
        second = await pipeline.submit(event)

        assert first.rejection_reason == RejectionReason.AMOUNT_MISMATCH
        assert second.duplicate is True
        async with session_factory() as db:
            rejections = await ledger.list_rejections(db, reason=RejectionReason.AMOUNT_MISMATCH)
        assert len(rejections) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_then_successful_attempt(
        self,
        pipeline: SettlementPipeline,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        """A declined prompt followed by a successful retry pays the order."""
        await make_order("O-retry")

        failed = await pipeline.submit(
            make_event("O-retry", dedup_key="flw:1:failed", outcome=PaymentOutcome.FAILED)
        )
        paid = await pipeline.submit(
            make_event("O-retry", dedup_key="flw:2:successful", external_reference="ORDER-O-retry-2")
        )

        assert failed.applied is False
        assert paid.applied is True
        assert (await load_order("O-retry")).status == OrderStatus.PAID.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_side_effect_failure_does_not_undo_payment(
        self,
        pipeline: SettlementPipeline,
        recorder: Any,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        recorder.failing.add(SideEffectAction.SMS)
        await make_order("O-sms-down")

        result = await pipeline.submit(make_event("O-sms-down", external_reference="ORDER-O-sms-down-1"))

        assert result.applied is True
        assert (await load_order("O-sms-down")).status == OrderStatus.PAID.value
        assert recorder.count(SideEffectAction.EMAIL) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_deferred_dispatch(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        guard: IdempotencyGuard,
        engine: Any,
        dispatcher: Any,
        recorder: Any,
        make_order: Any,
        make_event: Any,
    ) -> None:
        """With immediate dispatch off, the sweep delivers the side effects."""
        pipeline = SettlementPipeline(
            session_factory, guard, engine, dispatcher, dispatch_immediately=False
        )
        await make_order("O-deferred")

        await pipeline.submit(make_event("O-deferred", external_reference="ORDER-O-deferred-1"))
        assert recorder.calls == []

        assert await dispatcher.dispatch_pending() == 2
        assert recorder.count(SideEffectAction.SMS) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_releases_inventory(
        self,
        pipeline: SettlementPipeline,
        recorder: Any,
        make_order: Any,
        load_order: Any,
    ) -> None:
        await make_order("O-cancel")

        result = await pipeline.run_action("O-cancel", OrderAction.CANCEL, actor="ops", reason="out of stock")

        assert result.applied is True
        order = await load_order("O-cancel")
        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancellation_reason == "out of stock"
        assert recorder.count(SideEffectAction.INVENTORY_RELEASE, "cancelled") == 1
        assert recorder.count(SideEffectAction.SMS, "cancelled") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_engage(
        self,
        pipeline: SettlementPipeline,
        make_order: Any,
        load_order: Any,
    ) -> None:
        await make_order("O-engage")

        assert await pipeline.engage("O-engage", PaymentMethod.PESAPAL, "trk-1") is True
        assert await pipeline.engage("O-engage", PaymentMethod.PAYPAL, "PP-1") is False
        assert (await load_order("O-engage")).external_reference == "trk-1"
