"""Consecutive-day streak computation."""

from __future__ import annotations

from datetime import date, datetime
from typing import NamedTuple

from ecotrack.progression.periods import to_day


class StreakUpdate(NamedTuple):
    current_streak: int
    longest_streak: int


def day_difference(last_active: date | datetime, today: date | datetime) -> int:
    """Whole calendar days between two instants, both normalized to midnight UTC."""
    return (to_day(today) - to_day(last_active)).days


def is_consecutive_day(last_active: date | datetime | None, today: date | datetime) -> bool:
    """True when ``today`` is the day right after ``last_active`` (or there was no prior action)."""
    if last_active is None:
        return True
    return day_difference(last_active, today) == 1


def streak_before(
    last_active_date: date | datetime | None,
    current_streak: int,
    today: date | datetime,
) -> int:
    """Streak still standing when an action on ``today`` arrives.

    The stored streak counts only while the last action was today or yesterday;
    after a missed day it is 0, even though the row still holds the old value.
    """
    if last_active_date is None:
        return 0
    if day_difference(last_active_date, today) <= 1:
        return current_streak
    return 0


def update_streak(
    last_active_date: date | datetime | None,
    current_streak: int,
    longest_streak: int,
    today: date | datetime,
) -> StreakUpdate:
    """Compute the streak after an action performed on ``today``.

    - No previous action: streak starts at 1.
    - Same day: unchanged, a second action never inflates the streak.
    - Next day: +1, longest follows if exceeded.
    - Gap of two or more days: back to 1, longest is kept.

    A ``last_active_date`` after ``today`` (clock skew) is handled like a same-day call.
    """
    if last_active_date is None:
        return StreakUpdate(1, max(1, longest_streak))

    diff = day_difference(last_active_date, today)
    if diff <= 0:
        return StreakUpdate(current_streak, longest_streak)
    if diff == 1:
        new_streak = current_streak + 1
        return StreakUpdate(new_streak, max(new_streak, longest_streak))
    return StreakUpdate(1, longest_streak)
