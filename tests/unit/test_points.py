"""Points calculator tests: multiplier ladder and rounding."""

import pytest

from ecotrack.progression.points import calculate_points, get_streak_multiplier


class TestStreakMultiplier:
    """Test the multiplier ladder."""

    @pytest.mark.parametrize(
        ("streak", "expected"),
        [(0, 1.0), (2, 1.0), (3, 1.1), (6, 1.1), (7, 1.25), (13, 1.25), (14, 1.5), (29, 1.5), (30, 2.0), (365, 2.0)],
    )
    def test_thresholds_are_inclusive(self, streak, expected):
        assert get_streak_multiplier(streak) == expected


class TestCalculatePoints:
    """Test awarded points."""

    def test_ladder_on_100_base_points(self):
        assert calculate_points(100, 30) == 200
        assert calculate_points(100, 14) == 150
        assert calculate_points(100, 7) == 125
        assert calculate_points(100, 3) == 110
        assert calculate_points(100, 0) == 100

    def test_rounds_half_away_from_zero(self):
        assert calculate_points(5, 3) == 6  # 5.5
        assert calculate_points(15, 3) == 17  # 16.5
        assert calculate_points(2, 7) == 3  # 2.5
        assert calculate_points(10, 14) == 15

    def test_rounds_down_below_half(self):
        assert calculate_points(1, 7) == 1  # 1.25
        assert calculate_points(3, 3) == 3  # 3.3

    def test_zero_base_points(self):
        assert calculate_points(0, 30) == 0
