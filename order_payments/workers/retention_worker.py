"""
Dedup retention background worker.

Purges dedup records past their retention window once an hour.
"""
import asyncio
import signal
import sys
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.config import get_settings
from order_payments.core.idempotency import IdempotencyGuard
from order_payments.database.connection import close_db, get_session_factory, init_db
from order_payments.monitoring.logging import setup_logging
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PURGE_INTERVAL_SECONDS = 3600


async def purge_once(
    guard: IdempotencyGuard, session_factory: async_sessionmaker[AsyncSession]
) -> int:
    """Delete expired dedup records in one transaction."""
    async with session_factory() as db:
        purged = await guard.purge_expired(db)
        await db.commit()
    metrics.record_dedup_purge(purged)
    logger.info("dedup_records_purged", count=purged)
    return purged


async def start_retention_worker(interval_seconds: int = PURGE_INTERVAL_SECONDS) -> None:
    """
    Start the retention worker.

    Args:
        interval_seconds: Seconds between purges
    """
    setup_logging()
    settings = get_settings()

    logger.info(
        "retention_worker_starting",
        retention_hours=settings.dedup_retention_hours,
        interval_seconds=interval_seconds,
    )

    await init_db()
    guard = IdempotencyGuard(retention_hours=settings.dedup_retention_hours)
    session_factory = get_session_factory()
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("retention_worker_shutdown_signal_received", signal=sig)
        running = False
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await purge_once(guard, session_factory)
            except Exception as e:
                logger.error("retention_worker_error", error=str(e))

            # Sleep in short steps so shutdown stays responsive
            remaining = interval_seconds
            while remaining > 0 and running:
                step = min(remaining, 60)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await close_db()
        logger.info("retention_worker_stopped")


def main() -> None:
    asyncio.run(start_retention_worker())


if __name__ == "__main__":
    main()
