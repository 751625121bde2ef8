"""
Status poll background worker.

Polls Pesapal for every pending order that has a tracking id and applies
what it reports. Gateway outages are retried on the next cycle.
"""
import asyncio
import signal
import sys
from typing import Any

import structlog

from order_payments.api.dependencies import build_services
from order_payments.config import get_settings
from order_payments.database.connection import close_db, init_db
from order_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_poll_worker() -> None:
    """
    Start the poll worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info("poll_worker_starting", interval_seconds=settings.poll_interval_seconds)

    await init_db()
    services = build_services(settings)
    poller = services.poller

    if not services.pesapal_client.configured:
        logger.warning("poll_worker_pesapal_not_configured")

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("poll_worker_shutdown_signal_received", signal=sig)
        poller.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await poller.start()
    except Exception as e:
        logger.error("poll_worker_error", error=str(e))
        raise
    finally:
        await services.aclose()
        await close_db()
        logger.info("poll_worker_stopped")


def main() -> None:
    asyncio.run(start_poll_worker())


if __name__ == "__main__":
    main()
