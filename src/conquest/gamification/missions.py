"""Mission classification and badge conditions.

Badge rules are a closed set of condition kinds, each carrying its own
parameters, evaluated by one dispatcher (``evaluate_condition``). Missions
are per-activity classifications and may repeat; badges unlock once per
user.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from conquest.gamification.config import GameplayConfig
from conquest.gamification.context import ActivityMetrics, ActivityType, XPContext
from conquest.territory.grid import neighbours
from conquest.territory.reconciler import CellClassification, CellOutcome, TerritoryStats


class MissionCategory(str, Enum):
    TERRITORIAL = "territorial"
    PHYSICAL_EFFORT = "physicalEffort"
    PROGRESSION = "progression"


class MissionRarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


@dataclass(frozen=True)
class Mission:
    """One mission completed by an activity."""

    key: str
    category: MissionCategory
    name: str
    description: str
    rarity: MissionRarity

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.key,
            "category": self.category.value,
            "name": self.name,
            "description": self.description,
            "rarity": self.rarity.value,
        }


@dataclass(frozen=True)
class ActivityFacts:
    """Everything a mission or badge rule may look at."""

    metrics: ActivityMetrics
    stats: TerritoryStats
    context: XPContext
    config: GameplayConfig
    # XP of the activity before badge rewards
    xp_before_badges: int = 0
    # Km by which this activity pushed the week past the previous best, if it did
    weekly_record_improvement: float | None = None


# ---------------------------------------------------------------------------
# Badge conditions
# ---------------------------------------------------------------------------


class ConditionKind(str, Enum):
    """Closed set of badge rule shapes."""

    EARLY_START = "early_start"
    INDOOR_DURATION = "indoor_duration"
    FAST_PACE = "fast_pace"
    STEAL_AGED_CELL = "steal_aged_cell"
    STEAL_FROM_STREAK = "steal_from_streak"
    STEALS_FROM_ONE_VICTIM = "steals_from_one_victim"
    STEAL_ON_LONG_ACTIVITY = "steal_on_long_activity"
    STEAL_COUNT = "steal_count"
    STEAL_RECENTLY_DEFENDED = "steal_recently_defended"
    QUICK_RECONQUEST = "quick_reconquest"
    RECAPTURE_XP = "recapture_xp"
    POST_REACTIONS = "post_reactions"
    NEW_CELLS_OVER_DISTANCE = "new_cells_over_distance"
    WEEKLY_RECORD_MARGIN = "weekly_record_margin"
    STREAK_WEEKS = "streak_weeks"
    ACTIVITY_XP = "activity_xp"


@dataclass(frozen=True)
class Condition:
    kind: ConditionKind
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BadgeDefinition:
    slug: str
    name: str
    category: str
    description: str
    xp_reward: int
    condition: Condition


BADGE_CATALOG: list[BadgeDefinition] = [
    BadgeDefinition(
        "early_bird", "Early Bird", "training",
        "Train more than 5 km before 7:00 AM", 50,
        Condition(ConditionKind.EARLY_START, {"min_km": 5, "before_hour": 7}),
    ),
    BadgeDefinition(
        "iron_stamina", "Iron Stamina", "training",
        "Indoor session longer than 90 minutes", 50,
        Condition(ConditionKind.INDOOR_DURATION, {"min_minutes": 90}),
    ),
    BadgeDefinition(
        "elite_sprinter", "Elite Sprinter", "training",
        "Run at least 5 km under 4:30 min/km", 75,
        Condition(ConditionKind.FAST_PACE, {"activity_type": "run", "min_km": 5, "max_pace": 270}),
    ),
    BadgeDefinition(
        "white_glove", "White Glove Thief", "aggressive",
        "Steal a cell held for more than 30 days", 75,
        Condition(ConditionKind.STEAL_AGED_CELL, {"min_days": 30}),
    ),
    BadgeDefinition(
        "streak_breaker", "Streak Breaker", "aggressive",
        "Steal from a user on a streak longer than 4 weeks", 50,
        Condition(ConditionKind.STEAL_FROM_STREAK, {"min_weeks": 4}),
    ),
    BadgeDefinition(
        "shadow_hunter", "Shadow Hunter", "aggressive",
        "Steal 5 cells from the same user in one activity", 75,
        Condition(ConditionKind.STEALS_FROM_ONE_VICTIM, {"min_cells": 5}),
    ),
    BadgeDefinition(
        "uninvited", "Uninvited", "aggressive",
        "Steal a territory during an activity longer than 10 km", 50,
        Condition(ConditionKind.STEAL_ON_LONG_ACTIVITY, {"min_km": 10}),
    ),
    BadgeDefinition(
        "war_correspondent", "War Correspondent", "social",
        "Publish an activity with 3 thefts", 50,
        Condition(ConditionKind.STEAL_COUNT, {"min_steals": 3}),
    ),
    BadgeDefinition(
        "takeover", "Takeover", "aggressive",
        "Steal a cell defended less than 24 hours ago", 50,
        Condition(ConditionKind.STEAL_RECENTLY_DEFENDED, {"within_hours": 24}),
    ),
    BadgeDefinition(
        "human_boomerang", "Human Boomerang", "aggressive",
        "Win back a cell less than 1 hour after losing it", 75,
        Condition(ConditionKind.QUICK_RECONQUEST, {"within_hours": 1}),
    ),
    BadgeDefinition(
        "reconquest_king", "Reconquest King", "aggressive",
        "Accumulate 100 XP from recaptures alone", 100,
        Condition(ConditionKind.RECAPTURE_XP, {"min_xp": 100}),
    ),
    BadgeDefinition(
        "steel_influencer", "Steel Influencer", "social",
        "Receive 50 reactions on a post", 50,
        Condition(ConditionKind.POST_REACTIONS, {"min_reactions": 50}),
    ),
    BadgeDefinition(
        "deep_explorer", "Deep Explorer", "training",
        "Conquer 30 new cells in more than 15 km", 100,
        Condition(ConditionKind.NEW_CELLS_OVER_DISTANCE, {"min_cells": 30, "min_km": 15}),
    ),
    BadgeDefinition(
        "km_eater", "Km Eater", "training",
        "Beat your weekly record by more than 10 km", 100,
        Condition(ConditionKind.WEEKLY_RECORD_MARGIN, {"min_km": 10}),
    ),
    BadgeDefinition(
        "pure_consistency", "Pure Consistency", "training",
        "Keep an active streak for 12 weeks", 150,
        Condition(ConditionKind.STREAK_WEEKS, {"min_weeks": 12}),
    ),
    BadgeDefinition(
        "max_efficiency", "Max Efficiency", "training",
        "Earn more than 500 XP in a single activity", 100,
        Condition(ConditionKind.ACTIVITY_XP, {"min_xp": 500}),
    ),
]

BADGES_BY_SLUG: dict[str, BadgeDefinition] = {b.slug: b for b in BADGE_CATALOG}


def _stolen(outcomes: Iterable[CellOutcome]) -> list[CellOutcome]:
    return [o for o in outcomes if o.classification is CellClassification.STOLEN]


def evaluate_condition(condition: Condition, facts: ActivityFacts) -> bool:
    """Single dispatcher over every condition kind."""
    p = condition.params
    metrics, stats, context = facts.metrics, facts.stats, facts.context
    kind = condition.kind

    if kind is ConditionKind.EARLY_START:
        return metrics.distance_km > p["min_km"] and metrics.local_start.hour < p["before_hour"]

    if kind is ConditionKind.INDOOR_DURATION:
        return metrics.is_indoor and metrics.duration_minutes > p["min_minutes"]

    if kind is ConditionKind.FAST_PACE:
        pace = metrics.pace_seconds_per_km
        return (
            metrics.activity_type.value == p["activity_type"]
            and metrics.distance_km >= p["min_km"]
            and pace is not None
            and pace < p["max_pace"]
        )

    if kind is ConditionKind.STEAL_AGED_CELL:
        return any(o.held_days > p["min_days"] for o in _stolen(stats.outcomes))

    if kind is ConditionKind.STEAL_FROM_STREAK:
        return any(weeks > p["min_weeks"] for weeks in stats.victim_streaks.values())

    if kind is ConditionKind.STEALS_FROM_ONE_VICTIM:
        per_victim = Counter(o.victim_id for o in _stolen(stats.outcomes))
        return any(count >= p["min_cells"] for count in per_victim.values())

    if kind is ConditionKind.STEAL_ON_LONG_ACTIVITY:
        return stats.stolen_cells > 0 and metrics.distance_km > p["min_km"]

    if kind is ConditionKind.STEAL_COUNT:
        return stats.stolen_cells >= p["min_steals"]

    if kind is ConditionKind.STEAL_RECENTLY_DEFENDED:
        window = timedelta(hours=p["within_hours"])
        return any(
            o.previous is not None
            and o.previous.last_interaction == "defend"
            and o.last_conquered_at - o.previous.last_conquered_at < window
            for o in _stolen(stats.outcomes)
        )

    if kind is ConditionKind.QUICK_RECONQUEST:
        window = timedelta(hours=p["within_hours"])
        for o in stats.outcomes:
            if o.vengeance is None or not o.vengeance.get("stolen_at"):
                continue
            lost_at = datetime.fromisoformat(o.vengeance["stolen_at"])
            if o.last_conquered_at - lost_at < window:
                return True
        return False

    if kind is ConditionKind.RECAPTURE_XP:
        recaptures = context.total_recaptured_territories + stats.recaptured_cells
        return recaptures * facts.config.xp_per_recaptured_cell >= p["min_xp"]

    if kind is ConditionKind.POST_REACTIONS:
        return context.max_post_reactions >= p["min_reactions"]

    if kind is ConditionKind.NEW_CELLS_OVER_DISTANCE:
        return stats.new_cells >= p["min_cells"] and metrics.distance_km > p["min_km"]

    if kind is ConditionKind.WEEKLY_RECORD_MARGIN:
        improvement = facts.weekly_record_improvement
        return improvement is not None and improvement > p["min_km"]

    if kind is ConditionKind.STREAK_WEEKS:
        return context.current_streak_weeks >= p["min_weeks"]

    if kind is ConditionKind.ACTIVITY_XP:
        return facts.xp_before_badges > p["min_xp"]

    raise ValueError(f"Unknown condition kind: {kind}")


def evaluate_badges(facts: ActivityFacts) -> list[BadgeDefinition]:
    """Badges newly unlocked by this activity, in catalog order."""
    unlocked = facts.context.unlocked_badges
    return [
        badge for badge in BADGE_CATALOG
        if badge.slug not in unlocked and evaluate_condition(badge.condition, facts)
    ]


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------

# Pace ceilings (s/km) that count as a high-intensity effort
HIGH_INTENSITY_PACE: dict[ActivityType, float] = {
    ActivityType.RUN: 360,
    ActivityType.BIKE: 180,
    ActivityType.WALK: 720,
    ActivityType.HIKE: 720,
}

# Runs under this pace (s/km) rank as a sprint within high intensity
SPRINT_RUN_PACE = 300


def is_high_intensity(metrics: ActivityMetrics) -> bool:
    pace = metrics.pace_seconds_per_km
    ceiling = HIGH_INTENSITY_PACE.get(metrics.activity_type)
    return pace is not None and ceiling is not None and pace < ceiling


def largest_cluster(cell_ids: Iterable[str]) -> int:
    """Size of the largest edge-connected group of cells."""
    remaining = set(cell_ids)
    best = 0
    while remaining:
        stack = [remaining.pop()]
        size = 0
        while stack:
            current = stack.pop()
            size += 1
            for n in neighbours(current):
                if n in remaining:
                    remaining.remove(n)
                    stack.append(n)
        best = max(best, size)
    return best


def fief_cells(stats: TerritoryStats, config: GameplayConfig) -> list[str]:
    """Cells kept by the user that are old and defended enough for a fief."""
    min_age = timedelta(days=config.legendary_cluster_min_age_days)
    return [
        o.cell_id
        for o in stats.outcomes
        if o.classification in (CellClassification.DEFENDED, CellClassification.RECAPTURED)
        and o.last_conquered_at - o.first_conquered_at >= min_age
        and o.defense_count >= config.legendary_cluster_min_defenses
    ]


def _territorial_mission(new_cells: int, config: GameplayConfig) -> Mission:
    if new_cells < 5:
        rarity, name = MissionRarity.COMMON, "First Exploration"
        description = f"You conquered {new_cells} new territories"
    elif new_cells < 15:
        rarity, name = MissionRarity.RARE, "Expedition"
        description = f"You expanded your domain with {new_cells} territories"
    elif new_cells < config.legendary_threshold_cells:
        rarity, name = MissionRarity.EPIC, "Epic Conquest"
        description = f"Impressive! {new_cells} territories conquered"
    else:
        rarity, name = MissionRarity.LEGENDARY, "Legendary Dominion"
        description = f"Legendary feat! {new_cells} territories under your control"
    return Mission("territorial", MissionCategory.TERRITORIAL, name, description, rarity)


def evaluate_missions(facts: ActivityFacts) -> list[Mission]:
    """Classify the activity into zero or more missions."""
    metrics, stats, context, config = facts.metrics, facts.stats, facts.context, facts.config
    missions: list[Mission] = []

    if stats.new_cells > 0:
        missions.append(_territorial_mission(stats.new_cells, config))

    if stats.recaptured_cells > 0:
        missions.append(
            Mission(
                "recapture", MissionCategory.TERRITORIAL, "Reconquest",
                f"You recovered {stats.recaptured_cells} lost territories", MissionRarity.EPIC,
            )
        )

    if context.current_streak_weeks > 0:
        weeks = context.current_streak_weeks
        missions.append(
            Mission(
                "streak", MissionCategory.PROGRESSION, "Active Streak",
                f"Week #{weeks} of your streak",
                MissionRarity.EPIC if weeks >= 4 else MissionRarity.RARE,
            )
        )

    if facts.weekly_record_improvement is not None:
        week_km = context.current_week_distance_km + metrics.distance_km
        missions.append(
            Mission(
                "weekly_record", MissionCategory.PROGRESSION, "New Weekly Record",
                f"{week_km:.1f} km this week! You beat your record",
                MissionRarity.LEGENDARY if facts.weekly_record_improvement > 10 else MissionRarity.EPIC,
            )
        )

    if is_high_intensity(metrics):
        sprint = metrics.activity_type is ActivityType.RUN and metrics.pace_seconds_per_km < SPRINT_RUN_PACE
        missions.append(
            Mission(
                "physical_effort", MissionCategory.PHYSICAL_EFFORT,
                "Intense Sprint" if sprint else "Outstanding Effort",
                "High intensity workout completed",
                MissionRarity.RARE if sprint else MissionRarity.COMMON,
            )
        )

    if largest_cluster(fief_cells(stats, config)) >= config.legendary_cluster_size:
        missions.append(
            Mission(
                "lord_of_the_fief", MissionCategory.TERRITORIAL, "Lord of the Fief",
                f"You hold a fortified cluster of {config.legendary_cluster_size}+ veteran territories",
                MissionRarity.LEGENDARY,
            )
        )

    return missions
