"""
Session reminder worker - runs the reminder sweep on a fixed interval.

Bookings made inside the reminder window are reminded by the booking
transaction itself; this worker covers every other session.

Run with:
    python -m booking.workers.reminder_worker
"""

import asyncio
import logging
import signal
from typing import Any

from booking.services.reminder_service import send_due_reminders
from shared.logging_config import configure_logging

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 60 * 60

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum: int, frame: Any) -> None:
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def run_sweep() -> int:
    """Run one sweep. Errors are logged; returns the number of sessions reminded."""
    try:
        return await send_due_reminders()
    except Exception as e:
        logger.error(f"Error in reminder sweep: {e}", exc_info=True)
        return 0


async def async_main() -> None:
    """
    Sweep immediately, then every SWEEP_INTERVAL_SECONDS until shutdown.

    Sleeps in short steps on a single event loop so SIGTERM is honoured
    promptly and pooled connections stay on one loop.
    """
    logger.info("Session reminder worker starting...")

    while not shutdown_requested:
        await run_sweep()

        slept = 0
        while slept < SWEEP_INTERVAL_SECONDS and not shutdown_requested:
            await asyncio.sleep(1)
            slept += 1

    logger.info("Session reminder worker shutting down gracefully...")


def run_reminder_worker() -> None:
    configure_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(async_main())


if __name__ == "__main__":
    run_reminder_worker()
