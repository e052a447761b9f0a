"""Progression coordinator: fans one qualifying action out to every component.

There is no cross-aggregate transaction. Each step commits on its own and is
guarded by the progression ledger, so re-running an action (after a crash or
a step failure) applies only what is still missing. Step order:

1. progress   streak, awarded points (multiplier from the streak standing before today),
              totals. A missing user is a hard error; nothing else runs.
2. community  community-wide totals (members only)
3. milestones current-period recurring milestones
4. challenge  the community's active challenge
5. badges     threshold evaluation on post-update totals, conditional award
6. feed       one mission_complete entry (members only)

Steps 2-6 are isolated: a failure is logged, rolled back and reported in
``failed_steps`` while the remaining steps still run.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from functools import partial
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ecotrack.db.dialect import insert_for
from ecotrack.db.models import Community, User, UserProgress
from ecotrack.errors import NotFoundError
from ecotrack.progression.activity import ActivityFeedEmitter
from ecotrack.progression.badges import BadgeStats, award_badges, evaluate_badges, get_earned_badge_ids
from ecotrack.progression.challenges import contribute
from ecotrack.progression.ledger import claim, get_entry
from ecotrack.progression.milestones import update_recurring_milestones
from ecotrack.progression.periods import ensure_utc, utc_now
from ecotrack.progression.points import calculate_points, get_streak_multiplier
from ecotrack.progression.schemas import ActionOutcome, ProgressionAction
from ecotrack.progression.streak import streak_before, update_streak

logger = structlog.get_logger()

SCOPE_PROGRESS = "progress"
SCOPE_COMMUNITY = "community"
SCOPE_FEED = "feed"


class ProgressionCoordinator:
    """Entry point invoked once per persisted qualifying action."""

    def __init__(
        self,
        db: AsyncSession,
        redis: object | None,
        emitter: ActivityFeedEmitter,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.redis = redis
        self.emitter = emitter
        self._clock = clock

    async def record_action(self, action: ProgressionAction) -> ActionOutcome:
        now = ensure_utc(action.occurred_at) if action.occurred_at else self._clock()
        log = logger.bind(action_key=action.action_key, user_id=action.user_id)

        user = await self.db.get(User, action.user_id, populate_existing=True)
        if user is None:
            raise NotFoundError(f"User {action.user_id} not found")
        community_id = user.community_id

        points, multiplier, replayed = await self._apply_progress(action, now)
        failed_steps: list[str] = []

        if community_id is not None:
            await self._run_step(
                "community", failed_steps,
                partial(self._apply_community_totals, action, community_id, points, now),
            )

        completed_milestones = await self._run_step(
            "milestones", failed_steps,
            partial(
                update_recurring_milestones,
                self.db, self.redis, action.user_id, community_id, action.co2_saved,
                counts_as_mission=action.kind == "mission",
                action_key=action.action_key,
                emitter=self.emitter,
                now=now,
            ),
        )

        challenge = await self._run_step(
            "challenge", failed_steps,
            partial(
                contribute,
                self.db, self.redis, action.user_id, community_id, action.co2_saved,
                action_key=action.action_key,
                emitter=self.emitter,
                now=now,
            ),
        )

        new_badges = await self._run_step(
            "badges", failed_steps,
            partial(self._award_badges, action.user_id, community_id, now),
        )

        if community_id is not None:
            await self._run_step(
                "feed", failed_steps,
                partial(self._emit_feed, action, community_id, now),
            )

        progress = await self.db.get(UserProgress, action.user_id, populate_existing=True)
        outcome = ActionOutcome(
            action_key=action.action_key,
            user_id=action.user_id,
            points_awarded=points,
            streak_multiplier=multiplier,
            co2_saved_awarded=action.co2_saved,
            total_points=progress.total_points,
            total_co2_saved=progress.total_co2_saved,
            missions_count=progress.missions_count,
            current_streak=progress.current_streak,
            longest_streak=progress.longest_streak,
            newly_earned_badges=new_badges or [],
            completed_milestones=completed_milestones or [],
            challenge=challenge,
            replayed=replayed,
            failed_steps=failed_steps,
        )
        log.info(
            "action_recorded",
            points=points,
            multiplier=multiplier,
            badges=outcome.newly_earned_badges,
            milestones=len(outcome.completed_milestones),
            replayed=replayed,
            failed_steps=failed_steps,
        )
        return outcome

    async def _run_step(
        self,
        name: str,
        failed_steps: list[str],
        step: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            return await step()
        except Exception:
            await self.db.rollback()
            logger.exception("progression_step_failed", step=name)
            failed_steps.append(name)
            return None

    # --- Step 1: progress ---

    async def _get_progress(self, user_id: int) -> UserProgress:
        await self.db.execute(
            insert_for(self.db, UserProgress)
            .values(user_id=user_id)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        result = await self.db.execute(
            select(UserProgress)
            .where(UserProgress.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _apply_progress(self, action: ProgressionAction, now: datetime) -> tuple[int, float, bool]:
        """Returns (points awarded, multiplier, replayed)."""
        entry = await get_entry(self.db, action.action_key, SCOPE_PROGRESS)
        if entry is not None:
            return entry.points or 0, entry.multiplier or 1.0, True

        progress = await self._get_progress(action.user_id)
        today = now.date()
        streak = update_streak(progress.last_active_date, progress.current_streak, progress.longest_streak, today)

        # The multiplier reflects the streak before today's action; a lapsed streak counts as 0
        standing = streak_before(progress.last_active_date, progress.current_streak, today)
        multiplier = get_streak_multiplier(standing)
        points = calculate_points(action.base_points, standing)

        if not await claim(
            self.db, action.action_key, SCOPE_PROGRESS, action.user_id,
            points=points, multiplier=multiplier, now=now,
        ):
            await self.db.rollback()
            entry = await get_entry(self.db, action.action_key, SCOPE_PROGRESS)
            return (entry.points or 0, entry.multiplier or 1.0, True) if entry else (0, 1.0, True)

        await self.db.execute(
            update(UserProgress)
            .where(UserProgress.user_id == action.user_id)
            .values(
                total_points=UserProgress.total_points + points,
                total_co2_saved=UserProgress.total_co2_saved + action.co2_saved,
                missions_count=UserProgress.missions_count + (1 if action.kind == "mission" else 0),
                current_streak=streak.current_streak,
                longest_streak=streak.longest_streak,
                last_active_date=today,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return points, multiplier, False

    # --- Step 2: community totals ---

    async def _apply_community_totals(
        self, action: ProgressionAction, community_id: int, points: int, now: datetime,
    ) -> None:
        if await claim(self.db, action.action_key, SCOPE_COMMUNITY, action.user_id, now=now):
            await self.db.execute(
                update(Community)
                .where(Community.id == community_id)
                .values(
                    total_co2_saved=Community.total_co2_saved + action.co2_saved,
                    total_points=Community.total_points + points,
                )
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

    # --- Step 5: badges ---

    async def _award_badges(self, user_id: int, community_id: int | None, now: datetime) -> list[str]:
        progress = await self._get_progress(user_id)
        earned = await get_earned_badge_ids(self.db, user_id)
        stats = BadgeStats(
            missions_count=progress.missions_count,
            total_co2_saved=progress.total_co2_saved,
            current_streak=progress.current_streak,
            has_community=community_id is not None,
        )
        candidates = evaluate_badges(earned, stats)
        if not candidates:
            await self.db.commit()
            return []
        return await award_badges(self.db, self.redis, user_id, community_id, candidates, self.emitter, now)

    # --- Step 6: feed ---

    async def _emit_feed(self, action: ProgressionAction, community_id: int, now: datetime) -> None:
        claimed = await claim(self.db, action.action_key, SCOPE_FEED, action.user_id, now=now)
        await self.db.commit()
        if not claimed:
            return
        await self.emitter.mission_complete(
            community_id, action.user_id, action.title, action.co2_saved, action.category, now,
        )
