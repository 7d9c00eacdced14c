"""Level computation tests."""

from conquest.gamification.levels import LEVEL_TITLES, XP_PER_LEVEL, compute_level, title_for_level


class TestLevelComputation:
    def test_level_1_at_zero_xp(self):
        result = compute_level(0)
        assert result["level"] == 1
        assert result["title"] == "Wanderer"

    def test_level_boundary(self):
        """999 XP is still level 1; 1000 XP is level 2."""
        assert compute_level(XP_PER_LEVEL - 1)["level"] == 1
        assert compute_level(XP_PER_LEVEL)["level"] == 2

    def test_xp_into_level(self):
        result = compute_level(2350)
        assert result["level"] == 3
        assert result["xp_into_level"] == 350
        assert result["xp_for_level"] == XP_PER_LEVEL

    def test_title_changes_at_thresholds(self):
        assert compute_level(2000)["title"] == "Scout"
        assert compute_level(4000)["title"] == "Pathfinder"

    def test_next_title(self):
        result = compute_level(1500)
        assert result["next_level"] == 3
        assert result["next_title"] == "Scout"

    def test_negative_xp_clamped(self):
        assert compute_level(-50)["level"] == 1

    def test_titles_carry_over_between_thresholds(self):
        assert title_for_level(6) == "Pathfinder"
        assert title_for_level(100) == LEVEL_TITLES[-1]["title"]

    def test_thresholds_ascending(self):
        levels = [entry["level"] for entry in LEVEL_TITLES]
        assert levels == sorted(levels)
