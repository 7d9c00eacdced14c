"""Stream trigger handling of the processing worker."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from conquest.config import Settings
from conquest.processing.orchestrator import ActivityProcessor
from conquest.workers.processing_worker import WorkerSettings, handle_trigger, process_activity

pytestmark = pytest.mark.asyncio


@pytest.fixture
def ctx(session_factory) -> dict:
    settings = Settings(processing_stream="test:activities", processing_consumer_group="test-group")
    redis = AsyncMock()
    return {
        "redis": redis,
        "settings": settings,
        "processor": ActivityProcessor(session_factory, redis, settings),
    }


async def test_trigger_processes_and_acks(ctx, make_activity, straight_route):
    points, _ = straight_route(2)
    await make_activity("a1", "alice", points)

    status = await handle_trigger(ctx, "1-0", {"data": json.dumps({"activity_id": "a1"})})

    assert status == "completed"
    ctx["redis"].xack.assert_awaited_once_with("test:activities", "test-group", "1-0")


async def test_duplicate_trigger_is_acked(ctx, make_activity):
    await make_activity("a1", "alice", None)
    await handle_trigger(ctx, "1-0", {"data": json.dumps({"activity_id": "a1"})})

    status = await handle_trigger(ctx, "2-0", {"data": json.dumps({"activity_id": "a1"})})

    assert status is None
    assert ctx["redis"].xack.await_count == 2


async def test_malformed_trigger_is_dropped(ctx):
    assert await handle_trigger(ctx, "3-0", {"data": "{}"}) is None
    ctx["redis"].xack.assert_awaited_once()


async def test_process_activity_job(ctx, make_activity):
    await make_activity("a1", "alice", None)
    assert await process_activity(ctx, "a1") == "completed"


async def test_worker_settings():
    names = {f.__name__ for f in WorkerSettings.functions}
    assert names == {"consume_activity_triggers", "process_activity"}
    assert len(WorkerSettings.cron_jobs) == 2
