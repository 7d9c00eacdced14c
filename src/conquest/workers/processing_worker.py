"""Activity processing arq worker.

Consumes pending-activity triggers from a Redis stream (consumer group),
sweeps the ``pending`` status periodically for lost triggers, and runs the
weekly streak evaluation.

Import path for arq CLI: arq conquest.workers.processing_worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from conquest.config import get_settings
from conquest.database import close_db, get_session_factory, init_db
from conquest.gamification.streaks import check_streaks
from conquest.logging_config import setup_logging
from conquest.processing.orchestrator import ActivityProcessor
from conquest.processing.sweeper import sweep_pending
from conquest.processing.triggers import parse_trigger

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB + Redis on worker startup and ensure the consumer group exists."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    try:
        await redis_client.xgroup_create(
            settings.processing_stream, settings.processing_consumer_group, id="0", mkstream=True
        )
    except aioredis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise

    ctx["redis"] = redis_client
    ctx["settings"] = settings
    ctx["processor"] = ActivityProcessor(get_session_factory(), redis_client, settings)
    logger.info("Processing worker started (stream=%s)", settings.processing_stream)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Processing worker shut down")


async def handle_trigger(ctx: dict, msg_id: str, raw_data: dict) -> str | None:  # type: ignore[type-arg]
    """Process one stream entry and acknowledge it.

    Entries are acknowledged once processing finished, whatever its outcome;
    a failed run is recorded on the activity as ``error``.
    """
    redis_client: aioredis.Redis = ctx["redis"]
    settings = ctx["settings"]
    processor: ActivityProcessor = ctx["processor"]

    activity_id = parse_trigger(raw_data)
    status = None
    if activity_id is None:
        logger.warning("Dropping malformed trigger %s: %s", msg_id, raw_data)
    else:
        status = await processor.process(activity_id)
    await redis_client.xack(settings.processing_stream, settings.processing_consumer_group, msg_id)
    return status


async def consume_activity_triggers(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop: reads pending-activity triggers and processes them."""
    redis_client: aioredis.Redis = ctx["redis"]
    settings = ctx["settings"]
    streams = {settings.processing_stream: ">"}

    while True:
        try:
            events = await redis_client.xreadgroup(
                groupname=settings.processing_consumer_group,
                consumername=settings.processing_consumer_name,
                streams=streams,
                count=settings.processing_concurrency,
                block=5000,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        if not events:
            continue

        for _stream_name, messages in events:
            results = await asyncio.gather(
                *(handle_trigger(ctx, msg_id, raw_data) for msg_id, raw_data in messages),
                return_exceptions=True,
            )
            for (msg_id, _), result in zip(messages, results):
                if isinstance(result, Exception):
                    logger.error("Failed to handle trigger %s", msg_id, exc_info=result)


async def process_activity(ctx: dict, activity_id: str) -> str | None:  # type: ignore[type-arg]
    """Job: process a single activity on demand."""
    processor: ActivityProcessor = ctx["processor"]
    return await processor.process(activity_id)


async def sweep_pending_activities(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Scheduled task: pick up pending activities and fail stale runs."""
    return await sweep_pending(get_session_factory(), ctx["redis"], ctx["settings"])


async def weekly_streak_check(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: evaluate streaks every Monday 00:00 UTC."""
    async with get_session_factory()() as db:
        return await check_streaks(db, ctx["redis"])


class WorkerSettings:
    """arq worker settings for activity processing."""

    functions = [consume_activity_triggers, process_activity]
    cron_jobs = [
        cron(sweep_pending_activities, second={0}, run_at_startup=True),
        cron(weekly_streak_check, weekday=0, hour=0, minute=0, second=0),
    ]
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 4
    job_timeout = 0  # consume_activity_triggers runs forever
    allow_abort_jobs = True
