"""Recurring weekly/monthly milestones.

State machine per row: active -> completed (progress reaches the target inside
the window) or active -> failed (expiry sweep). Both are terminal; every write
below is guarded on ``status = 'active'`` so later writes to a terminal row are
no-ops.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import Integer, case, cast, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ecotrack.db.dialect import insert_for
from ecotrack.db.models import RecurringMilestone, UserProgress
from ecotrack.errors import ConcurrencyConflictError
from ecotrack.progression.badges import announce_badge, award_badge
from ecotrack.progression.catalog import (
    DIFFICULTY_EASY,
    DIFFICULTY_HARD,
    DIFFICULTY_MEDIUM,
    MILESTONE_TEMPLATES,
    UNIT_KG_CO2,
    UNIT_MISSIONS,
    MilestoneTemplate,
)
from ecotrack.progression.ledger import claim
from ecotrack.progression.periods import MONTHLY, WEEKLY, ensure_utc, period_bounds, period_key, utc_now
from ecotrack.progression.push import push_to_user
from ecotrack.progression.schemas import MilestoneCompletion

if TYPE_CHECKING:
    from ecotrack.progression.activity import ActivityFeedEmitter

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

SUMMARY_WINDOW = timedelta(days=28)


@dataclass(frozen=True)
class MilestoneAdvance:
    milestone_id: int
    advanced: bool
    completed: bool
    current_value: float | None = None
    percent_complete: int | None = None


# ---------------------------------------------------------------------------
# Templates and difficulty
# ---------------------------------------------------------------------------


async def get_user_difficulty(db: AsyncSession, user_id: int) -> str:
    """Difficulty tier from the number of milestones the user ever completed."""
    result = await db.execute(
        select(func.count()).select_from(RecurringMilestone).where(
            RecurringMilestone.user_id == user_id,
            RecurringMilestone.status == STATUS_COMPLETED,
        )
    )
    completed = result.scalar_one()
    if completed < 4:
        return DIFFICULTY_EASY
    if completed < 12:
        return DIFFICULTY_MEDIUM
    return DIFFICULTY_HARD


def select_templates(difficulty: str) -> list[MilestoneTemplate]:
    """One template per milestone type: CO2 goals follow the tier, mission goals are fixed."""
    chosen: dict[str, MilestoneTemplate] = {}
    for template in MILESTONE_TEMPLATES:
        if template.difficulty not in (None, difficulty):
            continue
        chosen.setdefault(template.type, template)
    return list(chosen.values())


def milestone_increment(unit: str, co2_saved: float, counts_as_mission: bool) -> float:
    """Contribution of one action to a milestone measured in ``unit``."""
    if unit == UNIT_KG_CO2:
        return co2_saved
    if unit == UNIT_MISSIONS:
        return 1 if counts_as_mission else 0
    return 0


# ---------------------------------------------------------------------------
# Resolve-or-create
# ---------------------------------------------------------------------------


async def _get_milestone(db: AsyncSession, user_id: int, milestone_type: str, key: str) -> RecurringMilestone | None:
    result = await db.execute(
        select(RecurringMilestone)
        .where(
            RecurringMilestone.user_id == user_id,
            RecurringMilestone.type == milestone_type,
            RecurringMilestone.period_key == key,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def resolve_or_create(
    db: AsyncSession,
    user_id: int,
    template: MilestoneTemplate,
    now: datetime | None = None,
) -> RecurringMilestone:
    """Fetch the row for (user, type, current period key), creating it if absent.

    Creation is an INSERT .. ON CONFLICT DO NOTHING on the unique key, so
    concurrent callers converge on the same row. Does not commit.
    """
    now = ensure_utc(now) or utc_now()
    key = period_key(template.period, now)
    start, end = period_bounds(template.period, now)

    await db.execute(
        insert_for(db, RecurringMilestone)
        .values(
            user_id=user_id,
            type=template.type,
            template_id=template.id,
            period=template.period,
            period_key=key,
            goal_target_value=template.target_value,
            goal_unit=template.unit,
            goal_label=template.label,
            current_value=0,
            percent_complete=0,
            status=STATUS_ACTIVE,
            reward_bonus_points=template.bonus_points,
            reward_badge_id=template.badge_id,
            period_start=start,
            period_end=end,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["user_id", "type", "period_key"])
    )
    milestone = await _get_milestone(db, user_id, template.type, key)
    if milestone is None:
        msg = f"Milestone {template.type}/{key} for user {user_id} vanished after insert"
        raise ConcurrencyConflictError(msg)
    return milestone


async def ensure_milestones_for_period(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> list[RecurringMilestone]:
    """Resolve the user's weekly and monthly rows for the periods containing ``now``."""
    difficulty = await get_user_difficulty(db, user_id)
    return [await resolve_or_create(db, user_id, t, now) for t in select_templates(difficulty)]


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


async def advance_milestone(
    db: AsyncSession,
    milestone_id: int,
    increment: float,
    now: datetime | None = None,
) -> MilestoneAdvance:
    """Add ``increment`` to an active milestone whose window contains ``now``.

    The add and the percent recompute are one UPDATE; completion is a second
    UPDATE guarded on status and target, so exactly one writer completes a row.
    Does not commit.
    """
    now = ensure_utc(now) or utc_now()
    if increment <= 0:
        return MilestoneAdvance(milestone_id, advanced=False, completed=False)

    new_value = RecurringMilestone.current_value + increment
    percent = case(
        (new_value >= RecurringMilestone.goal_target_value, 100),
        else_=cast(func.round(new_value * 100.0 / RecurringMilestone.goal_target_value), Integer),
    )
    result = await db.execute(
        update(RecurringMilestone)
        .where(
            RecurringMilestone.id == milestone_id,
            RecurringMilestone.status == STATUS_ACTIVE,
            RecurringMilestone.period_start <= now,
            RecurringMilestone.period_end >= now,
        )
        .values(current_value=new_value, percent_complete=percent)
        .returning(RecurringMilestone.current_value, RecurringMilestone.percent_complete)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()
    if row is None:
        return MilestoneAdvance(milestone_id, advanced=False, completed=False)

    completed = await complete_if_reached(db, milestone_id, now)
    return MilestoneAdvance(
        milestone_id,
        advanced=True,
        completed=completed,
        current_value=row.current_value,
        percent_complete=row.percent_complete,
    )


async def complete_if_reached(db: AsyncSession, milestone_id: int, now: datetime | None = None) -> bool:
    """active -> completed when progress meets the target. True only for the transitioning writer."""
    result = await db.execute(
        update(RecurringMilestone)
        .where(
            RecurringMilestone.id == milestone_id,
            RecurringMilestone.status == STATUS_ACTIVE,
            RecurringMilestone.current_value >= RecurringMilestone.goal_target_value,
        )
        .values(status=STATUS_COMPLETED, completed_at=now or utc_now(), percent_complete=100)
        .returning(RecurringMilestone.id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none() is not None


async def _grant_reward(db: AsyncSession, user_id: int, milestone: RecurringMilestone, now: datetime) -> bool:
    """Bonus points plus the optional reward badge. Returns whether the badge was newly recorded."""
    if milestone.reward_bonus_points:
        await db.execute(
            update(UserProgress)
            .where(UserProgress.user_id == user_id)
            .values(
                total_points=UserProgress.total_points + milestone.reward_bonus_points,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
    if milestone.reward_badge_id:
        return await award_badge(db, user_id, milestone.reward_badge_id, now)
    return False


async def update_recurring_milestones(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    community_id: int | None,
    co2_saved: float,
    *,
    counts_as_mission: bool,
    action_key: str,
    emitter: ActivityFeedEmitter | None = None,
    now: datetime | None = None,
) -> list[MilestoneCompletion]:
    """Apply one action to the user's current-period milestones.

    Each (action, milestone) pair is applied at most once, recorded in the
    progression ledger inside the same transaction as the progress update.
    Only rows for the periods containing ``now`` are touched; a row from a
    closed window is left for the expiry sweep.
    """
    now = ensure_utc(now) or utc_now()
    milestones = await ensure_milestones_for_period(db, user_id, now)

    completions: list[MilestoneCompletion] = []
    for milestone in milestones:
        increment = milestone_increment(milestone.goal_unit, co2_saved, counts_as_mission)
        if increment <= 0:
            continue
        if not await claim(db, action_key, f"milestone:{milestone.id}", user_id, now=now):
            continue

        advance = await advance_milestone(db, milestone.id, increment, now)
        if not advance.completed:
            continue

        badge_awarded = await _grant_reward(db, user_id, milestone, now)
        completions.append(MilestoneCompletion(
            milestone_id=milestone.id,
            type=milestone.type,
            label=milestone.goal_label,
            target_value=milestone.goal_target_value,
            unit=milestone.goal_unit,
            bonus_points=milestone.reward_bonus_points,
            badge_id=milestone.reward_badge_id,
            badge_awarded=badge_awarded,
        ))

    await db.commit()

    for completion in completions:
        logger.info("Milestone %s completed by user %s", completion.milestone_id, user_id)
        await push_to_user(
            redis, user_id,
            "Milestone complete!",
            f"{completion.label}: +{completion.bonus_points} pts",
            {"type": "milestone", "milestoneId": completion.milestone_id},
            now,
        )
        if community_id is not None and emitter is not None:
            await emitter.milestone(
                community_id, completion.target_value, completion.unit,
                user_id=user_id, label=completion.label, now=now,
            )
        if completion.badge_awarded and completion.badge_id:
            await announce_badge(redis, user_id, community_id, completion.badge_id, emitter, now)

    return completions


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------


async def expire_milestones(db: AsyncSession, now: datetime | None = None) -> int:
    """Fail every active milestone whose window closed before ``now``. Idempotent."""
    now = ensure_utc(now) or utc_now()
    result = await db.execute(
        update(RecurringMilestone)
        .where(
            RecurringMilestone.status == STATUS_ACTIVE,
            RecurringMilestone.period_end < now,
        )
        .values(status=STATUS_FAILED)
        .returning(RecurringMilestone.id)
        .execution_options(synchronize_session=False)
    )
    expired = len(result.all())
    await db.commit()
    logger.info("Milestone sweep complete: %d expired", expired)
    return expired


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_active_milestones(db: AsyncSession, user_id: int) -> list[RecurringMilestone]:
    result = await db.execute(
        select(RecurringMilestone)
        .where(
            RecurringMilestone.user_id == user_id,
            RecurringMilestone.status == STATUS_ACTIVE,
        )
        .order_by(RecurringMilestone.period, RecurringMilestone.type)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_milestone_history(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[RecurringMilestone], int]:
    """Completed and failed milestones, newest window first."""
    page = max(1, page)
    limit = min(20, max(5, limit))
    terminal = (
        RecurringMilestone.user_id == user_id,
        RecurringMilestone.status.in_(TERMINAL_STATUSES),
    )

    total_result = await db.execute(select(func.count()).select_from(RecurringMilestone).where(*terminal))
    total = total_result.scalar_one()

    result = await db.execute(
        select(RecurringMilestone)
        .where(*terminal)
        .order_by(RecurringMilestone.period_end.desc(), RecurringMilestone.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_milestone_summary(db: AsyncSession, user_id: int, now: datetime | None = None) -> dict[str, Any]:
    """Completion rate over the last four weeks."""
    now = ensure_utc(now) or utc_now()
    since = now - SUMMARY_WINDOW

    completed_result = await db.execute(
        select(func.count()).select_from(RecurringMilestone).where(
            RecurringMilestone.user_id == user_id,
            RecurringMilestone.status == STATUS_COMPLETED,
            RecurringMilestone.completed_at >= since,
        )
    )
    failed_result = await db.execute(
        select(func.count()).select_from(RecurringMilestone).where(
            RecurringMilestone.user_id == user_id,
            RecurringMilestone.status == STATUS_FAILED,
            RecurringMilestone.period_end >= since,
        )
    )
    completed = completed_result.scalar_one()
    failed = failed_result.scalar_one()
    total = completed + failed
    return {
        "completed_last_4_weeks": completed,
        "failed_last_4_weeks": failed,
        "completion_rate_percent": round(completed / total * 100) if total else 0,
    }


def milestone_days_remaining(milestone: RecurringMilestone, now: datetime | None = None) -> int:
    now = ensure_utc(now) or utc_now()
    remaining = ensure_utc(milestone.period_end) - now  # type: ignore[operator]
    return max(0, math.ceil(remaining.total_seconds() / 86400))


def period_label(milestone: RecurringMilestone) -> str:
    if milestone.period == WEEKLY:
        return "This week"
    if milestone.period == MONTHLY:
        return ensure_utc(milestone.period_start).strftime("%B %Y")  # type: ignore[union-attr]
    return milestone.period
