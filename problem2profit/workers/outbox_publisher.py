"""
Outbox publisher background worker.

Continuously replays outbox events whose post-commit side effects did not
complete. Run with ``python -m problem2profit.workers.outbox_publisher``.
"""
import asyncio
import signal
from typing import Any

import structlog

from problem2profit.core.outbox import OutboxPublisher
from problem2profit.database import close_db
from problem2profit.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT or SIGTERM.
    """
    setup_logging()

    logger.info("outbox_publisher_worker_starting")

    publisher = OutboxPublisher()

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
