"""UTC clock helpers and weekly/monthly period keys."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

WEEKLY = "weekly"
MONTHLY = "monthly"
PERIODS = (WEEKLY, MONTHLY)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Return ``dt`` as an aware UTC datetime.

    Some drivers (SQLite) hand back naive values for timestamptz columns;
    everything this service writes is UTC, so naive values are tagged as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_day(value: date | datetime) -> date:
    """Normalize a date or datetime to its UTC calendar day."""
    if isinstance(value, datetime):
        return ensure_utc(value).date()  # type: ignore[union-attr]
    return value


def utc_today(now: datetime | None = None) -> date:
    return to_day(now or utc_now())


def get_week_iso(dt: datetime) -> str:
    """Get ISO week string e.g. '2026-W09'. Uses %G-W%V (ISO year + ISO week)."""
    return ensure_utc(dt).strftime("%G-W%V")  # type: ignore[union-attr]


def get_month_key(dt: datetime) -> str:
    """Get month string e.g. '2026-03'."""
    return ensure_utc(dt).strftime("%Y-%m")  # type: ignore[union-attr]


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = to_day(dt)
    return d - timedelta(days=d.weekday())


def get_week_boundaries(dt: datetime) -> tuple[datetime, datetime]:
    """Get (Monday 00:00 UTC, Sunday 23:59:59.999999 UTC) for the ISO week containing dt."""
    monday = get_monday(dt)
    sunday = monday + timedelta(days=6)
    start = datetime.combine(monday, time.min, tzinfo=timezone.utc)
    end = datetime.combine(sunday, time.max, tzinfo=timezone.utc)
    return start, end


def get_month_boundaries(dt: datetime) -> tuple[datetime, datetime]:
    """Get (first day 00:00 UTC, last day 23:59:59.999999 UTC) for the month containing dt."""
    first = to_day(dt).replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    last = next_first - timedelta(days=1)
    start = datetime.combine(first, time.min, tzinfo=timezone.utc)
    end = datetime.combine(last, time.max, tzinfo=timezone.utc)
    return start, end


def period_key(period: str, now: datetime | None = None) -> str:
    """Deterministic key of the weekly or monthly window containing ``now``."""
    now = now or utc_now()
    if period == WEEKLY:
        return get_week_iso(now)
    if period == MONTHLY:
        return get_month_key(now)
    msg = f"Unknown period: {period}"
    raise ValueError(msg)


def period_bounds(period: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Start and end instants of the window containing ``now``."""
    now = now or utc_now()
    if period == WEEKLY:
        return get_week_boundaries(now)
    if period == MONTHLY:
        return get_month_boundaries(now)
    msg = f"Unknown period: {period}"
    raise ValueError(msg)
