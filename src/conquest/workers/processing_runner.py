"""Standalone runner for the activity processing consumer.

Runs the stream consumer and the periodic pending sweep without arq.

Usage: python -m conquest.workers.processing_runner
"""

from __future__ import annotations

import asyncio
import logging
import signal

from conquest.config import get_settings
from conquest.database import get_session_factory
from conquest.processing.sweeper import sweep_pending
from conquest.workers.processing_worker import consume_activity_triggers, shutdown, startup

logger = logging.getLogger(__name__)


async def main() -> None:
    """Run the trigger consumer and the pending sweep until signalled."""
    settings = get_settings()
    ctx: dict = {}
    await startup(ctx)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async def pending_sweeper() -> None:
        """Periodically process activities whose trigger never arrived."""
        while not stop.is_set():
            try:
                await sweep_pending(get_session_factory(), ctx["redis"], settings)
            except Exception:
                logger.exception("Pending sweep error")
            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.pending_sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass

    consumer = asyncio.create_task(consume_activity_triggers(ctx))
    sweeper = asyncio.create_task(pending_sweeper())
    logger.info("Starting activity processing consumer (consumer=%s)", settings.processing_consumer_name)

    try:
        await stop.wait()
    finally:
        consumer.cancel()
        await asyncio.gather(consumer, sweeper, return_exceptions=True)
        await shutdown(ctx)
        logger.info("Activity processing consumer stopped")


if __name__ == "__main__":
    asyncio.run(main())
