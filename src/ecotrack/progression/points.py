"""Streak-multiplied point awards."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

# (minimum streak in days, multiplier), evaluated from the top; first match wins.
STREAK_MULTIPLIERS: tuple[tuple[int, Decimal], ...] = (
    (30, Decimal("2.00")),
    (14, Decimal("1.50")),
    (7, Decimal("1.25")),
    (3, Decimal("1.10")),
)
BASE_MULTIPLIER = Decimal("1.00")


def _multiplier(streak: int) -> Decimal:
    for threshold, multiplier in STREAK_MULTIPLIERS:
        if streak >= threshold:
            return multiplier
    return BASE_MULTIPLIER


def get_streak_multiplier(streak: int) -> float:
    """Multiplier applied to base points for a user on a ``streak``-day streak."""
    return float(_multiplier(streak))


def calculate_points(base_points: int | float, user_streak: int) -> int:
    """Awarded points, rounded half away from zero.

    Computed on exact decimals so 5 x 1.10 is 5.5 (-> 6), not 5.500000001.
    """
    product = Decimal(str(base_points)) * _multiplier(user_streak)
    return int(product.quantize(Decimal(1), rounding=ROUND_HALF_UP))
