"""Versioned gameplay policy table.

The config is loaded once per processing run and passed explicitly to the
reconciler and the XP calculator. It is frozen so nothing can mutate it
mid-calculation.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.db.models import GameplayConfigRecord
from conquest.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_GAMEPLAY_CONFIG: dict[str, Any] = {
    "minDistanceKm": 0.5,
    "minDurationSeconds": 300,
    "baseFactorPerKm": 10.0,
    "factorRun": 1.2,
    "factorBike": 0.7,
    "factorWalk": 0.9,
    "factorHike": 0.9,
    "factorOther": 1.0,
    "factorIndoor": 0.5,
    "indoorXPPerMinute": 1.5,
    "dailyBaseXPCap": 300,
    "dailyCapScope": "base",
    "xpPerNewCell": 8,
    "xpPerDefendedCell": 3,
    "xpPerRecapturedCell": 12,
    "xpPerStolenCell": 20,
    "maxNewCellsXPPerActivity": 50,
    "baseStreakXPPerWeek": 10,
    "weeklyRecordBaseXP": 30,
    "weeklyRecordPerKmDiffXP": 5,
    "minWeeklyRecordKm": 5.0,
    "legendaryThresholdCells": 20,
    "lastMinuteDefenseBonus": 2,
    "lastMinuteDefenseHours": 24,
    "vengeanceXPReward": 25,
    "xpLootPerDay": 2,
    "xpConsolidation15DayBonus": 5,
    "xpConsolidation25DayBonus": 8,
    "xpStreakInterruptionBonus": 15,
    "territoryExpirationDays": 7,
    "legendaryClusterSize": 5,
    "legendaryClusterMinAgeDays": 30,
    "legendaryClusterMinDefenses": 5,
}


class GameplayConfig(BaseModel):
    """Immutable snapshot of the numeric gameplay policies.

    Every policy is required: a document missing a key is rejected instead
    of silently awarding XP with a zero-valued rule.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    version: int = 0

    min_distance_km: float = Field(alias="minDistanceKm", ge=0)
    min_duration_seconds: float = Field(alias="minDurationSeconds", ge=0)

    base_factor_per_km: float = Field(alias="baseFactorPerKm", ge=0)
    factor_run: float = Field(alias="factorRun", ge=0)
    factor_bike: float = Field(alias="factorBike", ge=0)
    factor_walk: float = Field(alias="factorWalk", ge=0)
    factor_hike: float = Field(alias="factorHike", ge=0)
    factor_other: float = Field(alias="factorOther", ge=0)
    factor_indoor: float = Field(alias="factorIndoor", ge=0)
    indoor_xp_per_minute: float = Field(alias="indoorXPPerMinute", ge=0)
    daily_base_xp_cap: int = Field(alias="dailyBaseXPCap", ge=0)
    daily_cap_scope: Literal["base", "total"] = Field(alias="dailyCapScope")

    xp_per_new_cell: int = Field(alias="xpPerNewCell", ge=0)
    xp_per_defended_cell: int = Field(alias="xpPerDefendedCell", ge=0)
    xp_per_recaptured_cell: int = Field(alias="xpPerRecapturedCell", ge=0)
    xp_per_stolen_cell: int = Field(alias="xpPerStolenCell", ge=0)
    max_new_cells_xp_per_activity: int = Field(alias="maxNewCellsXPPerActivity", ge=0)

    base_streak_xp_per_week: int = Field(alias="baseStreakXPPerWeek", ge=0)
    weekly_record_base_xp: int = Field(alias="weeklyRecordBaseXP", ge=0)
    weekly_record_per_km_diff_xp: float = Field(alias="weeklyRecordPerKmDiffXP", ge=0)
    min_weekly_record_km: float = Field(alias="minWeeklyRecordKm", ge=0)

    legendary_threshold_cells: int = Field(alias="legendaryThresholdCells", ge=1)
    last_minute_defense_bonus: int = Field(alias="lastMinuteDefenseBonus", ge=0)
    last_minute_defense_hours: float = Field(alias="lastMinuteDefenseHours", ge=0)
    vengeance_xp_reward: int = Field(alias="vengeanceXPReward", ge=0)
    xp_loot_per_day: float = Field(alias="xpLootPerDay", ge=0)
    xp_consolidation_15_day_bonus: int = Field(alias="xpConsolidation15DayBonus", ge=0)
    xp_consolidation_25_day_bonus: int = Field(alias="xpConsolidation25DayBonus", ge=0)
    xp_streak_interruption_bonus: int = Field(alias="xpStreakInterruptionBonus", ge=0)

    territory_expiration_days: int = Field(alias="territoryExpirationDays", ge=1)
    legendary_cluster_size: int = Field(alias="legendaryClusterSize", ge=1)
    legendary_cluster_min_age_days: int = Field(alias="legendaryClusterMinAgeDays", ge=0)
    legendary_cluster_min_defenses: int = Field(alias="legendaryClusterMinDefenses", ge=0)

    @classmethod
    def default(cls, **overrides: Any) -> GameplayConfig:
        """Default policy table, optionally overriding fields by name."""
        by_alias = {(cls.model_fields[k].alias or k): v for k, v in overrides.items()}
        return cls.model_validate({**DEFAULT_GAMEPLAY_CONFIG, **by_alias})

    def type_factor(self, activity_type: str) -> float:
        """Per-km multiplier for an activity type."""
        return {
            "run": self.factor_run,
            "bike": self.factor_bike,
            "walk": self.factor_walk,
            "hike": self.factor_hike,
            "indoor": self.factor_indoor,
        }.get(activity_type, self.factor_other)


def parse_gameplay_config(data: dict[str, Any], version: int = 0) -> GameplayConfig:
    """Validate a raw config document. Raises ConfigurationError if malformed."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"Gameplay config v{version} is not a mapping")
    try:
        return GameplayConfig.model_validate({**data, "version": version})
    except PydanticValidationError as e:
        raise ConfigurationError(f"Gameplay config v{version} is malformed: {e}") from e


async def load_gameplay_config(db: AsyncSession, version: int | None = None) -> GameplayConfig:
    """Fetch one config snapshot: a specific version, or the newest active one."""
    stmt = select(GameplayConfigRecord)
    if version is not None:
        stmt = stmt.where(GameplayConfigRecord.version == version)
    else:
        stmt = stmt.where(GameplayConfigRecord.is_active.is_(True)).order_by(
            GameplayConfigRecord.version.desc()
        )
    result = await db.execute(stmt.limit(1))
    record = result.scalar_one_or_none()
    if record is None:
        which = f"version {version}" if version is not None else "active version"
        raise ConfigurationError(f"No gameplay config found ({which})")
    return parse_gameplay_config(record.data, record.version)


async def seed_gameplay_config(db: AsyncSession, version: int = 1) -> bool:
    """Insert the default policy table. Returns False if the version already exists."""
    existing = await db.execute(
        select(GameplayConfigRecord).where(GameplayConfigRecord.version == version)
    )
    if existing.scalar_one_or_none() is not None:
        return False
    db.add(
        GameplayConfigRecord(
            version=version,
            data=dict(DEFAULT_GAMEPLAY_CONFIG),
            is_active=True,
            description="Default gameplay policies",
        )
    )
    await db.commit()
    logger.info("Seeded gameplay config v%d", version)
    return True
