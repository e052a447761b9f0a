"""Community activity feed: best-effort append and paginated reads."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ecotrack.db.models import CommunityActivity
from ecotrack.errors import SinkFailureError
from ecotrack.progression.catalog import BADGES_BY_ID
from ecotrack.progression.periods import utc_now

logger = logging.getLogger(__name__)

MISSION_COMPLETE = "mission_complete"
MEMBER_JOINED = "member_joined"
BADGE_EARNED = "badge_earned"
CHALLENGE_COMPLETED = "challenge_completed"
MILESTONE = "milestone"

ACTIVITY_TYPES = frozenset({MISSION_COMPLETE, MEMBER_JOINED, BADGE_EARNED, CHALLENGE_COMPLETED, MILESTONE})


class ActivityFeedEmitter:
    """Appends feed entries in their own transactions.

    The state change an entry describes is the source of truth; a failed append
    is retried, then logged and dropped, and never reaches the caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    async def emit(
        self,
        community_id: int,
        user_id: int | None,
        activity_type: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> CommunityActivity | None:
        """Append one entry; returns it, or None when every attempt failed."""
        if activity_type not in ACTIVITY_TYPES:
            msg = f"Unknown activity type: {activity_type}"
            raise ValueError(msg)

        created_at = now or utc_now()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._append(community_id, user_id, activity_type, metadata or {}, created_at)
            except SinkFailureError:
                logger.warning(
                    "Feed append failed (community=%s type=%s attempt %d/%d)",
                    community_id, activity_type, attempt, self.max_attempts,
                    exc_info=True,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)

        logger.error("Dropping %s feed entry for community %s", activity_type, community_id)
        return None

    async def _append(
        self,
        community_id: int,
        user_id: int | None,
        activity_type: str,
        metadata: dict[str, Any],
        created_at: datetime,
    ) -> CommunityActivity:
        try:
            async with self._session_factory() as db:
                activity = CommunityActivity(
                    community_id=community_id,
                    user_id=user_id,
                    type=activity_type,
                    activity_metadata=metadata,
                    created_at=created_at,
                )
                db.add(activity)
                await db.commit()
                return activity
        except SQLAlchemyError as exc:
            msg = f"Could not append {activity_type} entry for community {community_id}"
            raise SinkFailureError(msg) from exc

    # --- Typed emitters ---

    async def mission_complete(
        self,
        community_id: int,
        user_id: int,
        mission_title: str,
        co2_saved: float,
        category: str,
        now: datetime | None = None,
    ) -> CommunityActivity | None:
        return await self.emit(
            community_id, user_id, MISSION_COMPLETE,
            {"missionTitle": mission_title, "missionCo2Saved": co2_saved, "missionCategory": category},
            now,
        )

    async def member_joined(
        self, community_id: int, user_id: int, now: datetime | None = None,
    ) -> CommunityActivity | None:
        return await self.emit(community_id, user_id, MEMBER_JOINED, {}, now)

    async def badge_earned(
        self, community_id: int, user_id: int, badge_id: str, now: datetime | None = None,
    ) -> CommunityActivity | None:
        badge = BADGES_BY_ID.get(badge_id)
        return await self.emit(
            community_id, user_id, BADGE_EARNED,
            {"badgeId": badge_id, "badgeName": badge.label if badge else badge_id},
            now,
        )

    async def challenge_completed(
        self, community_id: int, challenge_title: str, now: datetime | None = None,
    ) -> CommunityActivity | None:
        return await self.emit(community_id, None, CHALLENGE_COMPLETED, {"challengeTitle": challenge_title}, now)

    async def milestone(
        self,
        community_id: int,
        value: float,
        unit: str,
        user_id: int | None = None,
        label: str | None = None,
        now: datetime | None = None,
    ) -> CommunityActivity | None:
        return await self.emit(
            community_id, user_id, MILESTONE,
            {"milestoneValue": value, "milestoneUnit": unit, "milestoneLabel": label},
            now,
        )


async def get_community_feed(
    db: AsyncSession,
    community_id: int,
    page: int = 1,
    limit: int = 20,
    max_limit: int = 50,
) -> tuple[list[CommunityActivity], int]:
    """Reverse-chronological, paginated feed of a community."""
    page = max(1, page)
    limit = min(max_limit, max(1, limit))
    offset = (page - 1) * limit

    total_result = await db.execute(
        select(func.count()).select_from(CommunityActivity).where(CommunityActivity.community_id == community_id)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(CommunityActivity)
        .where(CommunityActivity.community_id == community_id)
        .order_by(CommunityActivity.created_at.desc(), CommunityActivity.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


def format_activity_text(activity: CommunityActivity, user_name: str | None) -> tuple[str, str]:
    """Human-readable (text, subtext) for a feed row."""
    meta = activity.activity_metadata or {}
    name = user_name or "Someone"

    if activity.type == MISSION_COMPLETE:
        category = str(meta.get("missionCategory") or "")
        return (
            f"{name} completed {meta.get('missionTitle') or 'a mission'}",
            f"Saved {meta.get('missionCo2Saved', 0)} kg CO₂  •  {category.capitalize()}",
        )
    if activity.type == MEMBER_JOINED:
        return f"{name} joined the community", "Welcome to the team! 🌿"
    if activity.type == BADGE_EARNED:
        return f"{name} earned the {meta.get('badgeName') or 'badge'} badge", "🏅 Milestone unlocked"
    if activity.type == CHALLENGE_COMPLETED:
        return "Community goal reached! 🎉", "Everyone contributed to this win"
    if activity.type == MILESTONE:
        if meta.get("milestoneLabel") and user_name:
            return f"{user_name} completed: {meta['milestoneLabel']}", "Personal milestone hit 🌟"
        return f"Community saved {meta.get('milestoneValue', 0)} kg CO₂ this week", "Weekly milestone hit 🌍"
    return "Activity", ""
