"""Reprocess an already-processed (or failed) activity."""

from __future__ import annotations

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conquest.activities.service import get_activity, mark_pending
from conquest.config import Settings, get_settings
from conquest.processing.orchestrator import ActivityProcessor
from conquest.processing.state_machine import TERMINAL_STATES
from conquest.processing.triggers import publish_pending

logger = structlog.get_logger()


async def reprocess_activity(
    session_factory: async_sessionmaker[AsyncSession],
    activity_id: str,
    redis: object | None = None,
    settings: Settings | None = None,
    inline: bool = False,
) -> str | None:
    """Reset an activity to ``pending`` and wait for a terminal status.

    With ``inline`` (or without Redis) the activity is processed in this
    process; otherwise a trigger is published and the status is polled
    ``reprocess_poll_attempts`` times. Returns the terminal status, or None
    when polling gave up.
    """
    settings = settings or get_settings()
    log = logger.bind(activity_id=activity_id)

    async with session_factory() as db:
        activity = await mark_pending(db, activity_id)
        log.info("reprocess_requested", previous_attempts=activity.processing_attempts)

    if inline or redis is None:
        status = await ActivityProcessor(session_factory, redis, settings).process(activity_id)
        if status is not None:
            log.info("reprocess_finished", status=status)
            return status
    else:
        await publish_pending(redis, settings, activity_id)

    for attempt in range(1, settings.reprocess_poll_attempts + 1):
        async with session_factory() as db:
            status = (await get_activity(db, activity_id)).processing_status
        if status in TERMINAL_STATES:
            log.info("reprocess_finished", status=status, polls=attempt)
            return status
        await asyncio.sleep(settings.reprocess_poll_interval_seconds)

    log.warning("reprocess_poll_exhausted", polls=settings.reprocess_poll_attempts)
    return None
