"""XP breakdown calculation from metrics, territory stats, context and config."""

from datetime import datetime, timedelta, timezone

import pytest

from conquest.errors import ValidationError
from conquest.gamification.config import GameplayConfig
from conquest.gamification.context import ActivityMetrics, ActivityType, XPContext
from conquest.gamification.xp_calculator import (
    calculate,
    compute_base_xp,
    compute_streak_xp,
    compute_territory_xp,
    compute_xp,
    validate_activity,
    weekly_record_improvement,
)
from conquest.territory.reconciler import TerritoryStats

CONFIG = GameplayConfig.default()
START = datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)


def _metrics(
    activity_type: ActivityType = ActivityType.RUN,
    km: float = 5.0,
    seconds: float = 1800,
    start: datetime = START,
) -> ActivityMetrics:
    return ActivityMetrics(
        activity_id="a1",
        user_id="alice",
        activity_type=activity_type,
        start_date=start,
        end_date=start + timedelta(seconds=seconds),
        distance_meters=km * 1000,
        duration_seconds=seconds,
    )


class TestValidation:
    def test_long_enough_activity_passes(self):
        validate_activity(_metrics(), CONFIG)

    def test_too_short_duration(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_activity(_metrics(seconds=120), CONFIG)
        assert "duration" in exc_info.value.reason

    def test_too_short_distance(self):
        with pytest.raises(ValidationError):
            validate_activity(_metrics(km=0.3), CONFIG)

    def test_zero_distance_is_not_too_short(self):
        """Indoor sessions have no distance; only duration is checked."""
        validate_activity(_metrics(ActivityType.INDOOR, km=0, seconds=3600), CONFIG)

    def test_too_short_activity_earns_nothing(self):
        result = calculate(_metrics(seconds=100), TerritoryStats(new_cells=3), XPContext(), CONFIG)
        assert result.breakdown.total == 0
        assert result.missions == []
        assert result.badges == []


class TestBaseXP:
    def test_run_factor(self):
        assert compute_base_xp(_metrics(km=5), XPContext(), CONFIG) == 60

    def test_bike_factor(self):
        assert compute_base_xp(_metrics(ActivityType.BIKE, km=10), XPContext(), CONFIG) == 70

    def test_other_factor(self):
        assert compute_base_xp(_metrics(ActivityType.OTHER, km=3), XPContext(), CONFIG) == 30

    def test_daily_cap_limits_base(self):
        context = XPContext(today_base_xp_earned=280)
        assert compute_base_xp(_metrics(km=5), context, CONFIG) == 20

    def test_daily_cap_exhausted(self):
        context = XPContext(today_base_xp_earned=400)
        assert compute_base_xp(_metrics(km=5), context, CONFIG) == 0

    def test_indoor_uses_minutes(self):
        metrics = _metrics(ActivityType.INDOOR, km=0, seconds=3600)
        assert compute_base_xp(metrics, XPContext(), CONFIG) == 90


class TestTerritoryXP:
    def test_all_components(self):
        stats = TerritoryStats(new_cells=3, defended_cells=1, stolen_cells=1, total_loot_xp=10)
        # 3*8 + 1*3 + 1*20 + 10
        assert compute_territory_xp(stats, CONFIG) == 57

    def test_new_cells_capped_per_activity(self):
        assert compute_territory_xp(TerritoryStats(new_cells=10), CONFIG) == 50

    def test_defense_bonuses(self):
        stats = TerritoryStats(defended_cells=3, last_minute_defenses=2, total_consolidation_xp=6)
        # 3*3 + 2*2 + 6
        assert compute_territory_xp(stats, CONFIG) == 19

    def test_recapture_vengeance_and_streak_interruption(self):
        stats = TerritoryStats(recaptured_cells=1, vengeance_cells=1, streak_interruption_xp=15)
        # 12 + 25 + 15
        assert compute_territory_xp(stats, CONFIG) == 52

    def test_empty_route_has_no_territory_xp(self):
        assert compute_territory_xp(TerritoryStats(), CONFIG) == 0


class TestStreakXP:
    def test_per_week(self):
        assert compute_streak_xp(XPContext(current_streak_weeks=5), CONFIG) == 50

    def test_ten_weeks(self):
        assert compute_streak_xp(XPContext(current_streak_weeks=10), CONFIG) == 100

    def test_no_streak(self):
        assert compute_streak_xp(XPContext(), CONFIG) == 0


class TestWeeklyRecord:
    def test_crossing_the_record(self):
        context = XPContext(best_weekly_distance_km=10.0)
        result = calculate(_metrics(km=12), TerritoryStats(), context, CONFIG)
        assert result.weekly_record_improvement == pytest.approx(2.0)
        # 30 + 2 km * 5
        assert result.breakdown.xp_weekly_record == 40

    def test_record_already_crossed_this_week(self):
        context = XPContext(best_weekly_distance_km=10.0, current_week_distance_km=11.0)
        assert weekly_record_improvement(_metrics(km=3), context) is None

    def test_week_below_minimum_earns_nothing(self):
        context = XPContext(best_weekly_distance_km=2.0)
        result = calculate(_metrics(km=3), TerritoryStats(), context, CONFIG)
        assert result.weekly_record_improvement == pytest.approx(1.0)
        assert result.breakdown.xp_weekly_record == 0

    def test_no_previous_week(self):
        assert weekly_record_improvement(_metrics(km=30), XPContext()) is None


class TestTotals:
    def test_total_is_sum_of_components(self):
        stats = TerritoryStats(new_cells=5)
        context = XPContext(current_streak_weeks=2)
        breakdown = compute_xp(_metrics(km=5), stats, context, CONFIG)
        assert breakdown.to_dict() == {
            "xpBase": 60,
            "xpTerritory": 40,
            "xpStreak": 20,
            "xpWeeklyRecord": 0,
            "xpBadges": 0,
            "total": 120,
        }

    def test_badge_rewards_are_added(self):
        """5 km at 4:00 min/km unlocks Elite Sprinter."""
        result = calculate(_metrics(km=5, seconds=1200), TerritoryStats(), XPContext(), CONFIG)
        assert [b.slug for b in result.badges] == ["elite_sprinter"]
        assert result.breakdown.xp_badges == 75
        assert result.breakdown.total == 60 + 75

    def test_total_scope_cap_trims_later_components_first(self):
        config = GameplayConfig.default(daily_cap_scope="total")
        context = XPContext(today_total_xp_earned=250)
        breakdown = compute_xp(_metrics(km=5), TerritoryStats(new_cells=5), context, config)
        assert breakdown.xp_territory == 0
        assert breakdown.xp_base == 50
        assert breakdown.total == 50

    def test_total_scope_does_not_cap_base_separately(self):
        config = GameplayConfig.default(daily_cap_scope="total")
        context = XPContext(today_base_xp_earned=300)
        assert compute_base_xp(_metrics(km=5), context, config) == 60

    def test_result_is_never_negative(self):
        breakdown = compute_xp(_metrics(km=5), TerritoryStats(), XPContext(today_base_xp_earned=9999), CONFIG)
        assert breakdown.total >= 0

    def test_badge_held_elsewhere_loses_its_reward(self):
        result = calculate(_metrics(km=5, seconds=1200), TerritoryStats(), XPContext(), CONFIG)
        result.keep_badges([])
        assert result.badges == []
        assert result.breakdown.xp_badges == 0
        assert result.breakdown.total == 60

    def test_keeping_every_badge_changes_nothing(self):
        result = calculate(_metrics(km=5, seconds=1200), TerritoryStats(), XPContext(), CONFIG)
        result.keep_badges(["elite_sprinter"])
        assert result.breakdown.xp_badges == 75
