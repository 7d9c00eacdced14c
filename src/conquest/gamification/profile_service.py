"""User aggregate: creation, atomic counter updates, level and badge bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.db.models import UserBadge, UserProfile
from conquest.gamification.levels import compute_level

logger = logging.getLogger(__name__)

# Columns that processing may move; anything else is rejected
AGGREGATE_COLUMNS = frozenset({
    "xp",
    "total_activities",
    "total_distance_km",
    "total_conquered_territories",
    "total_defended_territories",
    "total_recaptured_territories",
    "total_stolen_territories",
    "total_lost_territories",
})


def _insert_for(db: AsyncSession):  # noqa: ANN202
    """Dialect-specific INSERT construct supporting ON CONFLICT DO NOTHING."""
    if db.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def get_or_create_profile(db: AsyncSession, user_id: str) -> UserProfile:
    """Get or create the aggregate row for a user (safe under concurrent creation)."""
    now = datetime.now(timezone.utc)
    insert = _insert_for(db)
    await db.execute(
        insert(UserProfile)
        .values(id=user_id, created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=["id"])
    )
    result = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
    return result.scalar_one()


async def apply_aggregate_deltas(
    db: AsyncSession,
    user_id: str,
    deltas: Mapping[str, float],
    sign: int = 1,
) -> None:
    """Atomically add (or with sign=-1, subtract) deltas: UPDATE col = col + n."""
    unknown = set(deltas) - AGGREGATE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown aggregate columns: {sorted(unknown)}")
    values = {
        name: getattr(UserProfile, name) + sign * amount
        for name, amount in deltas.items()
        if amount
    }
    if not values:
        return
    values["updated_at"] = datetime.now(timezone.utc)
    await db.execute(update(UserProfile).where(UserProfile.id == user_id).values(**values))


async def refresh_level(db: AsyncSession, user_id: str) -> tuple[int, int]:
    """Recompute level and title from the stored XP. Returns (old_level, new_level)."""
    result = await db.execute(
        select(UserProfile.xp, UserProfile.level).where(UserProfile.id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        return 0, 0
    info = compute_level(row.xp)
    if info["level"] != row.level:
        await db.execute(
            update(UserProfile)
            .where(UserProfile.id == user_id)
            .values(level=info["level"], level_title=info["title"])
        )
        logger.info("User %s level %d -> %d", user_id, row.level, info["level"])
    return row.level, info["level"]


async def get_badge_slugs(db: AsyncSession, user_id: str) -> frozenset[str]:
    result = await db.execute(select(UserBadge.badge_slug).where(UserBadge.user_id == user_id))
    return frozenset(result.scalars().all())


async def award_badges(
    db: AsyncSession,
    user_id: str,
    slugs: Iterable[str],
    activity_id: str | None = None,
) -> list[str]:
    """Insert badge unlocks, ignoring ones the user already holds.

    Returns the slugs that were actually inserted. A badge unlocked meanwhile
    by a concurrent activity of the same user is left out.
    """
    now = datetime.now(timezone.utc)
    insert = _insert_for(db)
    awarded: list[str] = []
    for slug in slugs:
        result = await db.execute(
            insert(UserBadge)
            .values(user_id=user_id, badge_slug=slug, activity_id=activity_id, earned_at=now)
            .on_conflict_do_nothing(index_elements=["user_id", "badge_slug"])
            .returning(UserBadge.badge_slug)
        )
        if result.scalar_one_or_none() is not None:
            awarded.append(slug)
        else:
            logger.info("Badge %s already held by %s, not awarded again", slug, user_id)
    return awarded
