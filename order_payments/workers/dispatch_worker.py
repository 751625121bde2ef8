"""
Side-effect dispatch background worker.

Each cycle re-plans markers missing for recent transitions, then runs every
due dispatch record: new, failed with elapsed backoff, or stale claims left
by a crashed process.
"""
import asyncio
import signal
import sys
import time
from datetime import timedelta
from typing import Any

import structlog

from order_payments.api.dependencies import Services, build_services
from order_payments.config import get_settings
from order_payments.core.domain import utcnow
from order_payments.database.connection import close_db, init_db
from order_payments.monitoring.logging import setup_logging
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_dispatch_cycle(services: Services) -> int:
    """
    Run one recovery and dispatch pass.

    Returns:
        int: Number of dispatch records executed
    """
    start = time.time()
    settings = services.settings
    dispatcher = services.dispatcher

    since = utcnow() - timedelta(hours=settings.dispatch_recovery_window_hours)
    await dispatcher.recover(since)
    processed = await dispatcher.dispatch_pending()

    metrics.set_dispatch_backlog(await dispatcher.get_backlog_count())
    async with services.session_factory() as db:
        open_rejections = await services.ledger.count_open_rejections(db)
    for reason, count in open_rejections.items():
        metrics.set_open_rejections(reason, count)

    metrics.record_sweep_duration(time.time() - start)
    return processed


async def start_dispatch_worker() -> None:
    """
    Start the dispatch worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info(
        "dispatch_worker_starting",
        interval_seconds=settings.dispatch_poll_interval_seconds,
        max_attempts=settings.dispatch_max_attempts,
    )

    await init_db()
    services = build_services(settings, dispatch_immediately=False)
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("dispatch_worker_shutdown_signal_received", signal=sig)
        running = False
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                processed = await run_dispatch_cycle(services)
                if processed == 0:
                    await asyncio.sleep(settings.dispatch_poll_interval_seconds)
                else:
                    # Records were processed, check immediately for more
                    await asyncio.sleep(0.1)
            except Exception as e:
                logger.error("dispatch_worker_cycle_error", error=str(e))
                await asyncio.sleep(settings.dispatch_poll_interval_seconds)
    finally:
        await services.aclose()
        await close_db()
        logger.info("dispatch_worker_stopped")


def main() -> None:
    asyncio.run(start_dispatch_worker())


if __name__ == "__main__":
    main()
