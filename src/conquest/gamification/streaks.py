"""Weekly streaks: ISO week helpers and the Monday evaluation."""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.db.models import Activity, Notification, UserProfile
from conquest.notifications.service import create_notification, push_notifications

logger = logging.getLogger(__name__)


def week_key(dt: datetime) -> str:
    """ISO year and week of ``dt``, as stored in ``last_active_week``."""
    iso_year, iso_week, _ = dt.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def week_bounds(dt: datetime) -> tuple[datetime, datetime]:
    """Monday 00:00 of dt's week and the following Monday, in dt's timezone."""
    monday = dt.date() - timedelta(days=dt.weekday())
    start = datetime.combine(monday, time.min, tzinfo=dt.tzinfo or timezone.utc)
    return start, start + timedelta(weeks=1)


async def _weekly_distances(
    db: AsyncSession, start: datetime, end: datetime
) -> dict[str, float]:
    """Km of completed activities per user within [start, end)."""
    result = await db.execute(
        select(Activity.user_id, func.sum(Activity.distance_meters))
        .where(
            Activity.processing_status == "completed",
            Activity.aggregates_applied.is_(True),
            Activity.end_date >= start,
            Activity.end_date < end,
        )
        .group_by(Activity.user_id)
    )
    return {user_id: (meters or 0.0) / 1000.0 for user_id, meters in result.all()}


async def check_streaks(db: AsyncSession, redis: object, now: datetime | None = None) -> int:
    """Weekly streak evaluation. Should run Monday 00:00 UTC.

    For each user:
    1. Active last week (a completed, counted activity): extend the streak
    2. Otherwise, with a streak > 0: reset it and notify
    3. Fold last week's distance into the best weekly distance

    Returns number of users processed.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    last_week_start, last_week_end = week_bounds(now - timedelta(weeks=1))
    last_week_iso = week_key(last_week_start)
    distances = await _weekly_distances(db, last_week_start, last_week_end)

    result = await db.execute(
        select(UserProfile).where(
            (UserProfile.current_streak_weeks > 0) | (UserProfile.id.in_(list(distances)))
        )
    )
    notifications: list[Notification] = []
    processed = 0

    for profile in result.scalars():
        if profile.last_active_week == last_week_iso:
            # Already evaluated for this week
            continue

        if profile.id in distances:
            profile.current_streak_weeks += 1
            profile.longest_streak_weeks = max(profile.longest_streak_weeks, profile.current_streak_weeks)
            profile.last_active_week = last_week_iso
            week_km = distances[profile.id]
            if profile.best_weekly_distance_km is None or week_km > profile.best_weekly_distance_km:
                profile.best_weekly_distance_km = week_km
        else:
            streak = profile.current_streak_weeks
            profile.current_streak_weeks = 0
            notifications.append(
                await create_notification(
                    db, profile.id, "streak_broken",
                    title="Streak broken",
                    message=f"Your {streak}-week streak has ended.",
                    metadata={"streakWeeks": streak, "week": last_week_iso},
                )
            )
        profile.updated_at = now
        processed += 1

    await db.commit()
    await push_notifications(redis, notifications)
    logger.info("Streak check complete: processed %d users for %s", processed, last_week_iso)
    return processed
