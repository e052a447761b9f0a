"""Period key and window tests, all in UTC."""

from datetime import date, datetime, timedelta, timezone

import pytest

from ecotrack.progression.periods import (
    MONTHLY,
    WEEKLY,
    ensure_utc,
    get_month_boundaries,
    get_monday,
    get_week_boundaries,
    get_week_iso,
    period_bounds,
    period_key,
    utc_today,
)


class TestWeekISO:
    """Test ISO week keys."""

    def test_monday_00_00_is_new_week(self):
        assert get_week_iso(datetime(2026, 3, 2, 0, 0, 0, tzinfo=timezone.utc)) == "2026-W10"

    def test_sunday_23_59_is_same_week(self):
        assert get_week_iso(datetime(2026, 3, 8, 23, 59, 59, tzinfo=timezone.utc)) == "2026-W10"

    def test_year_boundary_week(self):
        """Dec 29, 2025 is W01 of 2026."""
        assert get_week_iso(datetime(2025, 12, 29, 12, 0, 0, tzinfo=timezone.utc)) == "2026-W01"

    def test_other_timezone_is_converted(self):
        """Monday 01:00 in UTC+2 is still Sunday in UTC."""
        dt = datetime(2026, 3, 2, 1, 0, tzinfo=timezone(timedelta(hours=2)))
        assert get_week_iso(dt) == "2026-W09"


class TestBoundaries:
    """Test window start and end instants."""

    def test_week_boundaries(self):
        start, end = get_week_boundaries(datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc))
        assert start == datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
        assert end.date() == date(2026, 3, 8)
        assert end.hour == 23 and end.minute == 59

    def test_month_boundaries_february(self):
        start, end = get_month_boundaries(datetime(2026, 2, 14, tzinfo=timezone.utc))
        assert start == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert end.date() == date(2026, 2, 28)

    def test_month_boundaries_december(self):
        start, end = get_month_boundaries(datetime(2026, 12, 31, 23, 0, tzinfo=timezone.utc))
        assert start.date() == date(2026, 12, 1)
        assert end.date() == date(2026, 12, 31)

    def test_get_monday(self):
        assert get_monday(datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc)) == date(2026, 3, 2)


class TestPeriodKey:
    """Test the period dispatch helpers."""

    def test_keys(self):
        now = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
        assert period_key(WEEKLY, now) == "2026-W10"
        assert period_key(MONTHLY, now) == "2026-03"

    def test_bounds_contain_now(self):
        now = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
        for period in (WEEKLY, MONTHLY):
            start, end = period_bounds(period, now)
            assert start <= now <= end

    def test_unknown_period_raises(self):
        with pytest.raises(ValueError):
            period_key("daily")
        with pytest.raises(ValueError):
            period_bounds("yearly")

    def test_ensure_utc(self):
        assert ensure_utc(None) is None
        assert ensure_utc(datetime(2026, 3, 4, 12)).tzinfo is timezone.utc


class TestUtcToday:
    """Test the UTC calendar date."""

    def test_late_evening_west_of_utc_is_next_utc_day(self):
        eastern = timezone(timedelta(hours=-5))
        assert utc_today(datetime(2026, 3, 4, 22, 0, tzinfo=eastern)) == date(2026, 3, 5)

    def test_defaults_to_clock(self):
        assert utc_today() == datetime.now(timezone.utc).date()
