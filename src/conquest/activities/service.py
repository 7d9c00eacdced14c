"""Activity upload lifecycle: create, append route chunks, submit for processing."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.config import Settings
from conquest.db.models import Activity, RouteChunk
from conquest.errors import InvalidTransitionError
from conquest.gamification.profile_service import get_or_create_profile
from conquest.processing.state_machine import PENDING, UPLOADING, validate_transition
from conquest.processing.triggers import publish_pending

logger = logging.getLogger(__name__)


class ActivityNotFoundError(LookupError):
    pass


class DuplicateError(ValueError):
    pass


async def get_activity(db: AsyncSession, activity_id: str) -> Activity:
    activity = await db.get(Activity, activity_id)
    if activity is None:
        raise ActivityNotFoundError(f"Activity {activity_id} not found")
    return activity


async def create_activity(db: AsyncSession, **fields: Any) -> Activity:
    """Create an activity in ``uploading``. Raises DuplicateError if the id exists."""
    if await db.get(Activity, fields["id"]) is not None:
        raise DuplicateError(f"Activity {fields['id']} already exists")

    await get_or_create_profile(db, fields["user_id"])
    now = datetime.now(timezone.utc)
    activity = Activity(
        **fields,
        processing_status=UPLOADING,
        created_at=now,
        updated_at=now,
    )
    db.add(activity)
    await db.commit()
    logger.info("Created activity %s for user %s", activity.id, activity.user_id)
    return activity


async def add_route_chunk(
    db: AsyncSession,
    activity_id: str,
    order: int,
    points: list[dict[str, Any]],
) -> RouteChunk:
    """Append one ordered chunk of route points while the activity is uploading."""
    activity = await get_activity(db, activity_id)
    if activity.processing_status != UPLOADING:
        raise InvalidTransitionError(
            f"Route chunks can only be added while uploading (status is {activity.processing_status})"
        )

    chunk = RouteChunk(activity_id=activity_id, order=order, points=points)
    db.add(chunk)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise DuplicateError(f"Chunk {order} already exists for activity {activity_id}") from e
    return chunk


async def mark_pending(db: AsyncSession, activity_id: str) -> Activity:
    """Move an activity to ``pending`` (first submission or reprocessing)."""
    activity = await get_activity(db, activity_id)
    current = activity.processing_status
    validate_transition(current, PENDING)

    result = await db.execute(
        update(Activity)
        .where(Activity.id == activity_id, Activity.processing_status == current)
        .values(processing_status=PENDING, updated_at=datetime.now(timezone.utc))
    )
    if result.rowcount != 1:
        await db.rollback()
        raise InvalidTransitionError(f"Activity {activity_id} changed status concurrently")
    await db.commit()
    await db.refresh(activity)
    return activity


async def submit_activity(
    db: AsyncSession,
    redis: object | None,
    settings: Settings,
    activity_id: str,
) -> Activity:
    """Signal that the route is fully written and processing should start."""
    activity = await mark_pending(db, activity_id)
    await publish_pending(redis, settings, activity_id)
    logger.info("Activity %s submitted for processing", activity_id)
    return activity

