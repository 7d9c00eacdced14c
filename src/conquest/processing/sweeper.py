"""Periodic recovery of activities whose stream trigger was lost or whose run died."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conquest.config import Settings, get_settings
from conquest.db.models import Activity
from conquest.processing.orchestrator import ActivityProcessor
from conquest.processing.state_machine import ERROR, PENDING, PROCESSING, validate_transition

logger = structlog.get_logger()

SWEEP_BATCH_SIZE = 100


async def fail_stale_processing(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    now: datetime | None = None,
) -> int:
    """Mark runs stuck in ``processing`` past the stale threshold as ``error``."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.processing_stale_after_seconds)
    validate_transition(PROCESSING, ERROR)

    async with session_factory() as session:
        result = await session.execute(
            update(Activity)
            .where(
                Activity.processing_status == PROCESSING,
                Activity.processing_started_at < cutoff,
            )
            .values(
                processing_status=ERROR,
                processing_error="ProcessingError: run did not finish before the stale threshold",
                updated_at=now,
            )
        )
        await session.commit()

    if result.rowcount:
        logger.warning("stale_processing_failed", count=result.rowcount)
    return result.rowcount


async def sweep_pending(
    session_factory: async_sessionmaker[AsyncSession],
    redis: object | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Process every activity still ``pending``, oldest first.

    Runs are bounded by ``processing_concurrency``; activities already
    claimed by a stream consumer are skipped by the claim itself.
    """
    settings = settings or get_settings()
    stale = await fail_stale_processing(session_factory, settings, now)

    async with session_factory() as session:
        result = await session.execute(
            select(Activity.id)
            .where(Activity.processing_status == PENDING)
            .order_by(Activity.updated_at)
            .limit(SWEEP_BATCH_SIZE)
        )
        activity_ids = list(result.scalars())

    processor = ActivityProcessor(session_factory, redis, settings)
    semaphore = asyncio.Semaphore(settings.processing_concurrency)

    async def _one(activity_id: str) -> str | None:
        async with semaphore:
            return await processor.process(activity_id, now)

    statuses = await asyncio.gather(*(_one(a) for a in activity_ids))
    summary = {
        "pending": len(activity_ids),
        "processed": sum(1 for s in statuses if s is not None),
        "stale": stale,
    }
    if activity_ids or stale:
        logger.info("pending_sweep_finished", **summary)
    return summary
