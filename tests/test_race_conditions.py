"""
Race condition tests for concurrent settlement.

Tests idempotency and conditional updates under concurrent deliveries.
"""
import asyncio
from typing import Any, List

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core import (
    AdmissionResult,
    IdempotencyGuard,
    OrderAction,
    OrderLedger,
    OrderStatus,
    PaymentMethod,
    RejectionReason,
    SettlementPipeline,
    SideEffectAction,
    SourceChannel,
    TransitionResult,
)


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_admits_same_dedup_key(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        guard: IdempotencyGuard,
        make_event: Any,
    ) -> None:
        """
        Concurrent admissions with the same dedup key.

        Exactly one caller must be admitted.
        """
        event = make_event("R1", dedup_key="race-key")

        async def admit() -> AdmissionResult:
            async with session_factory() as db:
                result = await guard.admit(event, db)
                await db.commit()
                return result

        results = await asyncio.gather(*[admit() for _ in range(10)])

        assert sum(1 for r in results if r.admitted) == 1
        assert all(r.reason == "duplicate" for r in results if not r.admitted)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_webhook_deliveries(
        self,
        pipeline: SettlementPipeline,
        recorder: Any,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        """The same webhook delivered ten times at once pays and notifies once."""
        await make_order("R2", total="120000")
        event = make_event("R2", "120000", dedup_key="tx-race", external_reference="ORDER-R2-1")

        results: List[TransitionResult] = await asyncio.gather(
            *[pipeline.submit(event) for _ in range(10)]
        )

        assert sum(1 for r in results if r.applied) == 1
        assert sum(1 for r in results if r.duplicate) == 9
        assert (await load_order("R2")).status == OrderStatus.PAID.value
        assert recorder.count(SideEffectAction.SMS) == 1
        assert recorder.count(SideEffectAction.EMAIL) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_webhook_and_poll_agree_on_same_reference(
        self,
        pipeline: SettlementPipeline,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: OrderLedger,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        """Two channels reporting the same settlement: one transition, one piece of evidence."""
        await make_order("R3")
        push = make_event("R3", dedup_key="push-R3", external_reference="REF-R3")
        verify = make_event(
            "R3",
            dedup_key="verify-R3",
            source_channel=SourceChannel.POLL_STATUS,
            external_reference="REF-R3",
        )

        results = await asyncio.gather(pipeline.submit(push), pipeline.submit(verify))

        assert sum(1 for r in results if r.applied) == 1
        assert all(r.rejection_reason is None for r in results)
        async with session_factory() as db:
            assert len(await ledger.get_history(db, "R3")) == 1
            assert len(await ledger.list_evidence(db, "R3")) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_competing_channels_one_winner(
        self,
        pipeline: SettlementPipeline,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        """Two channels with different references: the loser is a reference conflict."""
        await make_order("R4")
        momo = make_event("R4", dedup_key="momo-R4", external_reference="ORDER-R4-1")
        paypal = make_event(
            "R4",
            dedup_key="paypal-R4",
            source_channel=SourceChannel.REDIRECT_CAPTURE,
            payment_method=PaymentMethod.PAYPAL,
            external_reference="PP-R4",
        )

        results = await asyncio.gather(pipeline.submit(momo), pipeline.submit(paypal))

        winners = [r for r in results if r.applied]
        losers = [r for r in results if not r.applied]
        assert len(winners) == 1
        assert losers[0].rejection_reason == RejectionReason.REFERENCE_CONFLICT
        order = await load_order("R4")
        assert order.status == OrderStatus.PAID.value
        assert order.external_reference in ("ORDER-R4-1", "PP-R4")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancel_racing_payment(
        self,
        pipeline: SettlementPipeline,
        make_order: Any,
        load_order: Any,
        make_event: Any,
    ) -> None:
        """Whatever wins, the order ends in a state the graph allows and nothing is lost."""
        await make_order("R5")
        payment = make_event("R5", dedup_key="pay-R5", external_reference="ORDER-R5-1")

        payment_result, cancel_result = await asyncio.gather(
            pipeline.submit(payment),
            pipeline.run_action("R5", OrderAction.CANCEL, actor="ops"),
        )

        order = await load_order("R5")
        assert cancel_result.applied is True
        assert order.status == OrderStatus.CANCELLED.value
        if not payment_result.applied:
            assert payment_result.rejection_reason == RejectionReason.ALREADY_TERMINAL
