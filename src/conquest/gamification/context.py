"""Inputs of the XP and mission calculation.

Everything the calculator needs is gathered here by the caller, so the
calculation itself never touches the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class ActivityType(str, Enum):
    """Supported workout kinds."""

    RUN = "run"
    WALK = "walk"
    BIKE = "bike"
    HIKE = "hike"
    INDOOR = "indoor"
    OTHER = "other"


def _zone(name: str | None) -> timezone | ZoneInfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


@dataclass(frozen=True)
class ActivityMetrics:
    """Measured facts of one activity."""

    activity_id: str
    user_id: str
    activity_type: ActivityType
    start_date: datetime
    end_date: datetime
    distance_meters: float = 0.0
    duration_seconds: float = 0.0
    tz_name: str = "UTC"

    @property
    def distance_km(self) -> float:
        return max(0.0, self.distance_meters) / 1000.0

    @property
    def duration_minutes(self) -> float:
        return max(0.0, self.duration_seconds) / 60.0

    @property
    def pace_seconds_per_km(self) -> float | None:
        if self.distance_km <= 0:
            return None
        return self.duration_seconds / self.distance_km

    @property
    def is_indoor(self) -> bool:
        return self.activity_type is ActivityType.INDOOR

    @property
    def local_start(self) -> datetime:
        """Start time in the activity's own timezone."""
        return self.start_date.astimezone(_zone(self.tz_name))

    @property
    def zone(self) -> timezone | ZoneInfo:
        return _zone(self.tz_name)


@dataclass(frozen=True)
class XPContext:
    """Historical state of the user, captured before this activity counts."""

    current_week_distance_km: float = 0.0
    best_weekly_distance_km: float | None = None
    current_streak_weeks: int = 0
    today_base_xp_earned: int = 0
    today_total_xp_earned: int = 0
    total_recaptured_territories: int = 0
    max_post_reactions: int = 0
    unlocked_badges: frozenset[str] = field(default_factory=frozenset)
