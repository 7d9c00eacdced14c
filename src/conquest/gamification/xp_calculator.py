"""XP calculation for one activity.

Pure functions of (metrics, territory stats, context, config). No I/O, so
the same code serves processing, reprocessing and simulations.

Daily cap scope is a config decision (``dailyCapScope``):
  "base"   only xpBase is limited by what is left of dailyBaseXPCap today
  "total"  the activity total is limited by what is left of the cap today;
           components are trimmed from the last one backwards
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field

from conquest.errors import ValidationError
from conquest.gamification.config import GameplayConfig
from conquest.gamification.context import ActivityMetrics, XPContext
from conquest.gamification.missions import (
    ActivityFacts,
    BadgeDefinition,
    Mission,
    evaluate_badges,
    evaluate_missions,
)
from conquest.territory.reconciler import TerritoryStats

XP_COMPONENTS = ("xp_base", "xp_territory", "xp_streak", "xp_weekly_record", "xp_badges")


@dataclass
class XPBreakdown:
    xp_base: int = 0
    xp_territory: int = 0
    xp_streak: int = 0
    xp_weekly_record: int = 0
    xp_badges: int = 0

    @property
    def total(self) -> int:
        return max(0, self.xp_base + self.xp_territory + self.xp_streak + self.xp_weekly_record + self.xp_badges)

    def to_dict(self) -> dict[str, int]:
        return {
            "xpBase": self.xp_base,
            "xpTerritory": self.xp_territory,
            "xpStreak": self.xp_streak,
            "xpWeeklyRecord": self.xp_weekly_record,
            "xpBadges": self.xp_badges,
            "total": self.total,
        }


@dataclass
class CalculationResult:
    breakdown: XPBreakdown
    missions: list[Mission] = field(default_factory=list)
    badges: list[BadgeDefinition] = field(default_factory=list)
    weekly_record_improvement: float | None = None

    def keep_badges(self, slugs: Collection[str]) -> None:
        """Drop badges outside ``slugs`` together with their XP."""
        dropped = [b for b in self.badges if b.slug not in slugs]
        if not dropped:
            return
        self.badges = [b for b in self.badges if b.slug in slugs]
        self.breakdown.xp_badges = max(0, self.breakdown.xp_badges - sum(b.xp_reward for b in dropped))


def validate_activity(metrics: ActivityMetrics, config: GameplayConfig) -> None:
    """Raise ValidationError if the activity is too short to count."""
    if metrics.duration_seconds < config.min_duration_seconds:
        raise ValidationError(
            f"duration {metrics.duration_seconds:.0f}s below minimum {config.min_duration_seconds:.0f}s"
        )
    if 0 < metrics.distance_km < config.min_distance_km:
        raise ValidationError(
            f"distance {metrics.distance_km:.2f}km below minimum {config.min_distance_km:.2f}km"
        )


def is_too_short(metrics: ActivityMetrics, config: GameplayConfig) -> bool:
    try:
        validate_activity(metrics, config)
    except ValidationError:
        return True
    return False


def compute_base_xp(metrics: ActivityMetrics, context: XPContext, config: GameplayConfig) -> int:
    """Distance XP scaled by activity type, or per-minute XP without distance."""
    if metrics.distance_km > 0:
        raw = metrics.distance_km * config.base_factor_per_km * config.type_factor(metrics.activity_type.value)
    else:
        raw = metrics.duration_minutes * config.indoor_xp_per_minute
    base = round(raw)
    if config.daily_cap_scope == "base":
        remaining = max(0, config.daily_base_xp_cap - context.today_base_xp_earned)
        base = min(base, remaining)
    return base


def compute_territory_xp(stats: TerritoryStats, config: GameplayConfig) -> int:
    xp = min(stats.new_cells * config.xp_per_new_cell, config.max_new_cells_xp_per_activity)
    xp += stats.defended_cells * config.xp_per_defended_cell
    xp += stats.recaptured_cells * config.xp_per_recaptured_cell
    xp += stats.stolen_cells * config.xp_per_stolen_cell
    xp += stats.last_minute_defenses * config.last_minute_defense_bonus
    xp += stats.vengeance_cells * config.vengeance_xp_reward
    xp += stats.total_loot_xp + stats.total_consolidation_xp + stats.streak_interruption_xp
    return xp


def compute_streak_xp(context: XPContext, config: GameplayConfig) -> int:
    return max(0, context.current_streak_weeks) * config.base_streak_xp_per_week


def weekly_record_improvement(metrics: ActivityMetrics, context: XPContext) -> float | None:
    """Km by which this activity pushes the week past the best previous week.

    None unless the week was at or under the record before this activity and
    is over it after, so a record is only crossed once per week.
    """
    best = context.best_weekly_distance_km
    if best is None or metrics.distance_km <= 0:
        return None
    before = context.current_week_distance_km
    after = before + metrics.distance_km
    if before <= best < after:
        return after - best
    return None


def compute_weekly_record_xp(
    metrics: ActivityMetrics,
    context: XPContext,
    config: GameplayConfig,
    improvement: float | None,
) -> int:
    if improvement is None:
        return 0
    week_km = context.current_week_distance_km + metrics.distance_km
    if week_km < config.min_weekly_record_km:
        return 0
    return round(config.weekly_record_base_xp + improvement * config.weekly_record_per_km_diff_xp)


def _apply_total_cap(breakdown: XPBreakdown, context: XPContext, config: GameplayConfig) -> None:
    remaining = max(0, config.daily_base_xp_cap - context.today_total_xp_earned)
    excess = breakdown.total - remaining
    for name in reversed(XP_COMPONENTS):
        if excess <= 0:
            break
        value = getattr(breakdown, name)
        cut = min(value, excess)
        setattr(breakdown, name, value - cut)
        excess -= cut


def calculate(
    metrics: ActivityMetrics,
    stats: TerritoryStats,
    context: XPContext,
    config: GameplayConfig,
) -> CalculationResult:
    """XP breakdown, missions and newly unlocked badges for one activity."""
    if is_too_short(metrics, config):
        return CalculationResult(breakdown=XPBreakdown())

    improvement = weekly_record_improvement(metrics, context)
    breakdown = XPBreakdown(
        xp_base=compute_base_xp(metrics, context, config),
        xp_territory=compute_territory_xp(stats, config),
        xp_streak=compute_streak_xp(context, config),
        xp_weekly_record=compute_weekly_record_xp(metrics, context, config, improvement),
    )

    facts = ActivityFacts(
        metrics=metrics,
        stats=stats,
        context=context,
        config=config,
        xp_before_badges=breakdown.total,
        weekly_record_improvement=improvement,
    )
    badges = evaluate_badges(facts)
    breakdown.xp_badges = sum(b.xp_reward for b in badges)

    if config.daily_cap_scope == "total":
        _apply_total_cap(breakdown, context, config)

    return CalculationResult(
        breakdown=breakdown,
        missions=evaluate_missions(facts),
        badges=badges,
        weekly_record_improvement=improvement,
    )


def compute_xp(
    metrics: ActivityMetrics,
    stats: TerritoryStats,
    context: XPContext,
    config: GameplayConfig,
) -> XPBreakdown:
    """Breakdown only; shortcut used by simulations."""
    return calculate(metrics, stats, context, config).breakdown
