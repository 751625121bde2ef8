"""
Idempotency guard tests.
"""
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core import IdempotencyGuard
from order_payments.core.domain import utcnow


class TestIdempotencyGuard:
    """Dedup admission backed by the primary-key constraint."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_sight_is_admitted(
        self, test_db: AsyncSession, guard: IdempotencyGuard, make_event: Any
    ) -> None:
        event = make_event("O1", dedup_key="tx-1")

        result = await guard.admit(event, test_db)

        assert result.admitted is True
        assert result.reason is None
        assert await guard.seen("tx-1", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_sight_is_duplicate(
        self, test_db: AsyncSession, guard: IdempotencyGuard, make_event: Any
    ) -> None:
        event = make_event("O1", dedup_key="tx-1")

        first = await guard.admit(event, test_db)
        second = await guard.admit(event, test_db)

        assert first.admitted is True
        assert second.admitted is False
        assert second.reason == "duplicate"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_keeps_surrounding_transaction(
        self, test_db: AsyncSession, guard: IdempotencyGuard, make_event: Any
    ) -> None:
        await guard.admit(make_event("O1", dedup_key="tx-1"), test_db)
        await guard.admit(make_event("O1", dedup_key="tx-1"), test_db)
        third = await guard.admit(make_event("O1", dedup_key="tx-2"), test_db)

        assert third.admitted is True
        assert await guard.seen("tx-1", test_db)
        assert await guard.seen("tx-2", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rolled_back_admission_is_forgotten(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        guard: IdempotencyGuard,
        make_event: Any,
    ) -> None:
        """A crash before commit must let the redelivery through."""
        event = make_event("O1", dedup_key="tx-crash")

        async with session_factory() as db:
            assert (await guard.admit(event, db)).admitted
            await db.rollback()

        async with session_factory() as db:
            result = await guard.admit(event, db)
            await db.commit()

        assert result.admitted is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_purge_expired(
        self, test_db: AsyncSession, guard: IdempotencyGuard, make_event: Any
    ) -> None:
        await guard.admit(make_event("O1", dedup_key="tx-old"), test_db)

        assert await guard.purge_expired(test_db, now=utcnow()) == 0
        purged = await guard.purge_expired(test_db, now=utcnow() + timedelta(hours=73))

        assert purged == 1
        assert not await guard.seen("tx-old", test_db)
