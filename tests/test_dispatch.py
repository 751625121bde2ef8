"""
Side-effect dispatcher tests.

Planning is idempotent, each action is isolated, failures back off and
are eventually abandoned, and lost markers are recovered.
"""
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core import (
    DispatchState,
    OrderLedger,
    OrderStatus,
    ReconciliationEngine,
    SideEffectAction,
    SideEffectDispatcher,
)
from order_payments.core.domain import utcnow
from order_payments.database.models import SideEffectDispatch


async def plan_paid(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: SideEffectDispatcher,
    order_id: str,
) -> int:
    async with session_factory() as db:
        created = await dispatcher.plan(db, order_id, OrderStatus.PAID)
        await db.commit()
    return created


async def records_for(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: SideEffectDispatcher,
    order_id: str,
) -> Any:
    async with session_factory() as db:
        return {r.action: r for r in await dispatcher.list_for_order(db, order_id)}


class TestPlanning:
    """Dispatch records per transition."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_is_idempotent(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: SideEffectDispatcher,
        make_order: Any,
    ) -> None:
        await make_order("D1")

        assert await plan_paid(session_factory, dispatcher, "D1") == 2
        assert await plan_paid(session_factory, dispatcher, "D1") == 0

        records = await records_for(session_factory, dispatcher, "D1")
        assert set(records) == {"sms", "email"}
        assert all(r.state == DispatchState.PENDING.value for r in records.values())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_plans_inventory_release(
        self,
        test_db: AsyncSession,
        ledger: OrderLedger,
        dispatcher: SideEffectDispatcher,
    ) -> None:
        await ledger.create_order(test_db, total=1000, currency="UGX", order_id="D-cancel")

        created = await dispatcher.plan(test_db, "D-cancel", OrderStatus.CANCELLED)

        assert created == 2
        actions = {r.action for r in await dispatcher.list_for_order(test_db, "D-cancel")}
        assert actions == {SideEffectAction.INVENTORY_RELEASE.value, SideEffectAction.SMS.value}


class TestExecution:
    """Claiming and running planned actions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_each_action_runs_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: SideEffectDispatcher,
        recorder: Any,
        make_order: Any,
    ) -> None:
        await make_order("D2")
        await plan_paid(session_factory, dispatcher, "D2")

        outcomes = await dispatcher.dispatch("D2", OrderStatus.PAID)
        again = await dispatcher.dispatch("D2", OrderStatus.PAID)
        swept = await dispatcher.dispatch_pending()

        assert outcomes == {"sms": "succeeded", "email": "succeeded"}
        assert again == {}
        assert swept == 0
        assert recorder.count(SideEffectAction.SMS) == 1
        assert recorder.count(SideEffectAction.EMAIL) == 1
        assert await dispatcher.get_backlog_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_is_isolated_and_backs_off(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: SideEffectDispatcher,
        recorder: Any,
        make_order: Any,
    ) -> None:
        await make_order("D3")
        await plan_paid(session_factory, dispatcher, "D3")
        recorder.failing.add(SideEffectAction.SMS)

        outcomes = await dispatcher.dispatch("D3", OrderStatus.PAID)

        assert outcomes == {"sms": "failed", "email": "succeeded"}
        records = await records_for(session_factory, dispatcher, "D3")
        sms = records["sms"]
        assert sms.attempts == 1
        assert "provider down" in sms.last_error
        assert sms.next_attempt_at > utcnow() + timedelta(seconds=20)

        # Not due yet
        assert await dispatcher.dispatch_pending() == 0
        # Due after the first backoff
        assert await dispatcher.dispatch_pending(now=utcnow() + timedelta(seconds=31)) == 1
        assert recorder.count(SideEffectAction.SMS) == 2
        assert recorder.count(SideEffectAction.EMAIL) == 1

        # The order itself is never touched by a failing side effect
        async with session_factory() as db:
            order = await OrderLedger().require_order(db, "D3")
        assert order.status == OrderStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_abandoned_after_max_attempts(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: SideEffectDispatcher,
        recorder: Any,
        make_order: Any,
    ) -> None:
        await make_order("D4")
        await plan_paid(session_factory, dispatcher, "D4")
        recorder.failing.add(SideEffectAction.EMAIL)

        await dispatcher.dispatch("D4", OrderStatus.PAID)
        await dispatcher.dispatch_pending(now=utcnow() + timedelta(minutes=5))
        await dispatcher.dispatch_pending(now=utcnow() + timedelta(minutes=30))

        records = await records_for(session_factory, dispatcher, "D4")
        assert records["email"].state == DispatchState.ABANDONED.value
        assert records["email"].attempts == dispatcher.max_attempts
        assert records["sms"].state == DispatchState.SUCCEEDED.value

        assert await dispatcher.dispatch_pending(now=utcnow() + timedelta(days=1)) == 0
        async with session_factory() as db:
            failed = await dispatcher.list_failed(db)
        assert [r.action for r in failed] == ["email"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_handler_fails_record(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_order: Any,
    ) -> None:
        dispatcher = SideEffectDispatcher(session_factory, handlers={}, max_attempts=1)
        await make_order("D5")
        await plan_paid(session_factory, dispatcher, "D5")

        outcomes = await dispatcher.dispatch("D5", OrderStatus.PAID)

        assert outcomes == {"sms": "abandoned", "email": "abandoned"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_claim_is_reclaimed(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: SideEffectDispatcher,
        recorder: Any,
        make_order: Any,
    ) -> None:
        """A worker that died mid-dispatch leaves an in-progress claim behind."""
        await make_order("D6")
        await plan_paid(session_factory, dispatcher, "D6")
        async with session_factory() as db:
            await db.execute(
                update(SideEffectDispatch)
                .where(SideEffectDispatch.order_id == "D6")
                .values(
                    state=DispatchState.IN_PROGRESS.value,
                    claimed_at=utcnow() - timedelta(minutes=10),
                    attempts=1,
                )
            )
            await db.commit()

        processed = await dispatcher.dispatch_pending()

        assert processed == 2
        records = await records_for(session_factory, dispatcher, "D6")
        assert all(r.state == DispatchState.SUCCEEDED.value for r in records.values())
        assert all(r.attempts == 2 for r in records.values())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_claim_is_left_alone(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: SideEffectDispatcher,
        recorder: Any,
        make_order: Any,
    ) -> None:
        await make_order("D7")
        await plan_paid(session_factory, dispatcher, "D7")
        async with session_factory() as db:
            await db.execute(
                update(SideEffectDispatch)
                .where(SideEffectDispatch.order_id == "D7")
                .values(state=DispatchState.IN_PROGRESS.value, claimed_at=utcnow(), attempts=1)
            )
            await db.commit()

        assert await dispatcher.dispatch_pending() == 0
        assert recorder.calls == []


class TestRecovery:
    """Transitions whose markers were lost are re-planned."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recover_plans_missing_records(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: OrderLedger,
        dispatcher: SideEffectDispatcher,
        recorder: Any,
        make_order: Any,
        make_event: Any,
    ) -> None:
        # An engine without a dispatcher applies the transition but plans nothing
        bare_engine = ReconciliationEngine(ledger=ledger)
        await make_order("D8")
        async with session_factory() as db:
            result = await bare_engine.apply("D8", make_event("D8", external_reference="R-8"), db)
            await db.commit()
        assert result.applied

        since = utcnow() - timedelta(hours=1)
        assert await dispatcher.recover(since) == 2
        assert await dispatcher.recover(since) == 0

        assert await dispatcher.dispatch_pending() == 2
        assert recorder.count(SideEffectAction.SMS, "paid") == 1
        assert recorder.count(SideEffectAction.EMAIL, "paid") == 1

    @pytest.mark.unit
    def test_backoff_doubles(self, dispatcher: SideEffectDispatcher) -> None:
        assert dispatcher.backoff(1) == timedelta(seconds=30)
        assert dispatcher.backoff(2) == timedelta(seconds=60)
        assert dispatcher.backoff(3) == timedelta(seconds=120)
