"""
Idempotency guard for settlement events.

Admission is a single INSERT of a ``DedupRecord`` keyed by the event's dedup
key. The primary-key constraint in the database decides which of two racing
deliveries wins, so adapters running in separate processes or machines agree
without any application-level lock.
"""
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.core.domain import AdmissionResult, PaymentEvent, utcnow
from order_payments.database.models import DedupRecord

logger = structlog.get_logger(__name__)

DUPLICATE = "duplicate"


class IdempotencyGuard:
    """
    Admits each dedup key at most once.

    The insert runs inside a SAVEPOINT on the caller's session so that a
    duplicate rolls back only the dedup insert, and a crash before the
    caller commits leaves no record behind (the redelivery is then admitted).
    """

    def __init__(self, retention_hours: int = 72):
        """
        Initialize the guard.

        Args:
            retention_hours: How long a dedup record must outlive first sight
        """
        self.retention = timedelta(hours=retention_hours)

    async def admit(self, event: PaymentEvent, db: AsyncSession) -> AdmissionResult:
        """
        Try to record first sight of ``event.dedup_key``.

        Args:
            event: Normalized payment event
            db: Database session (transaction owned by the caller)

        Returns:
            AdmissionResult: ``admitted=True`` for first sight, otherwise
            ``admitted=False, reason="duplicate"``
        """
        now = utcnow()
        stmt = insert(DedupRecord).values(
            dedup_key=event.dedup_key,
            order_ref=event.order_ref,
            source_channel=event.source_channel.value,
            first_seen_at=now,
            expires_at=now + self.retention,
        )
        try:
            async with db.begin_nested():
                await db.execute(stmt)
        except IntegrityError:
            logger.debug(
                "payment_event_duplicate",
                dedup_key=event.dedup_key,
                order_ref=event.order_ref,
                source_channel=event.source_channel.value,
            )
            return AdmissionResult(admitted=False, reason=DUPLICATE)

        logger.debug(
            "payment_event_admitted",
            dedup_key=event.dedup_key,
            order_ref=event.order_ref,
        )
        return AdmissionResult(admitted=True)

    async def seen(self, dedup_key: str, db: AsyncSession) -> bool:
        """Whether a dedup key has been admitted and not yet purged."""
        stmt = select(DedupRecord.dedup_key).where(DedupRecord.dedup_key == dedup_key)
        return (await db.execute(stmt)).scalar() is not None

    async def purge_expired(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """
        Delete dedup records whose retention window has passed.

        Returns:
            int: Number of records deleted
        """
        cutoff = now or utcnow()
        result = await db.execute(
            delete(DedupRecord)
            .where(DedupRecord.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        purged = result.rowcount or 0
        if purged:
            logger.info("dedup_records_purged", count=purged, cutoff=cutoff.isoformat())
        return purged
