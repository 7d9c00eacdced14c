"""Notification and feed records.

Records are persisted here; delivery to devices is external. After commit,
notifications are also published on ``ws:user:{user_id}`` so a connected
client can refresh.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.db.models import FeedEntry, Notification

logger = logging.getLogger(__name__)

VALID_TYPES = {
    "territory_lost",
    "territory_stolen_success",
    "territory_defended",
    "achievement",
    "streak_broken",
}


async def create_notification(
    db: AsyncSession,
    user_id: str,
    type_: str,
    title: str,
    message: str | None = None,
    sender_id: str | None = None,
    activity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Notification:
    """Persist a notification record (flushed, not committed)."""
    if type_ not in VALID_TYPES:
        raise ValueError(f"Invalid notification type: {type_}")

    notification = Notification(
        user_id=user_id,
        type=type_,
        sender_id=sender_id,
        activity_id=activity_id,
        title=title,
        message=message,
        notification_metadata=metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()
    return notification


async def record_feed_entry(
    db: AsyncSession,
    user_id: str,
    event_type: str,
    title: str,
    subtitle: str | None = None,
    activity_id: str | None = None,
    xp_earned: int | None = None,
    rarity: str | None = None,
    is_personal: bool = False,
    metadata: dict[str, Any] | None = None,
) -> FeedEntry:
    """Record an entry for the activity feed."""
    entry = FeedEntry(
        user_id=user_id,
        activity_id=activity_id,
        event_type=event_type,
        title=title,
        subtitle=subtitle,
        xp_earned=xp_earned,
        rarity=rarity,
        is_personal=is_personal,
        feed_metadata=metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.flush()
    return entry


async def _page(db: AsyncSession, model, user_id: str, page: int, per_page: int) -> tuple[list, int]:
    total = (
        await db.execute(select(func.count()).select_from(model).where(model.user_id == user_id))
    ).scalar_one()
    rows = await db.scalars(
        select(model)
        .where(model.user_id == user_id)
        .order_by(model.created_at.desc(), model.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(rows), total


async def get_notifications(
    db: AsyncSession, user_id: str, page: int = 1, per_page: int = 20
) -> tuple[list[Notification], int]:
    """A user's notifications, newest first, with the unpaginated total."""
    return await _page(db, Notification, user_id, page, per_page)


async def get_feed(
    db: AsyncSession, user_id: str, page: int = 1, per_page: int = 20
) -> tuple[list[FeedEntry], int]:
    return await _page(db, FeedEntry, user_id, page, per_page)


def notification_payload(notification: Notification) -> dict[str, Any]:
    return {
        "id": str(notification.id),
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "senderId": notification.sender_id,
        "activityId": notification.activity_id,
        "metadata": notification.notification_metadata or {},
        "timestamp": notification.created_at.isoformat() if notification.created_at else None,
        "read": notification.read,
    }


async def push_notification_to_user(redis: object | None, notification: Notification) -> None:
    """Publish a notification to ws:user:{user_id}.

    The notification must already be flushed (have an ``id``).
    """
    if redis is None:
        return

    try:
        await redis.publish(  # type: ignore[union-attr]
            f"ws:user:{notification.user_id}",
            json.dumps({"event": "notification", "data": notification_payload(notification)}),
        )
    except Exception:
        logger.warning(
            "Failed to push notification via ws:user:%s",
            notification.user_id,
            exc_info=True,
        )


async def push_notifications(redis: object | None, notifications: Iterable[Notification]) -> None:
    for notification in notifications:
        await push_notification_to_user(redis, notification)
