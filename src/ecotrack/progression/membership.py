"""Joining a community: membership counters, feed entry, challenge bootstrap, badge."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ecotrack.db.models import Community, User
from ecotrack.errors import NotFoundError
from ecotrack.progression.badges import award_badges
from ecotrack.progression.challenges import ensure_active_challenge
from ecotrack.progression.periods import ensure_utc, utc_now

if TYPE_CHECKING:
    from ecotrack.progression.activity import ActivityFeedEmitter

logger = logging.getLogger(__name__)

COMMUNITY_BADGE = "community_builder"


async def join_community(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    community_id: int,
    emitter: ActivityFeedEmitter | None = None,
    now: datetime | None = None,
) -> bool:
    """Move ``user_id`` into ``community_id``. Returns False if already a member.

    Raises NotFoundError for an unknown user or community.
    """
    now = ensure_utc(now) or utc_now()

    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    if await db.get(Community, community_id) is None:
        raise NotFoundError(f"Community {community_id} not found")

    previous = user.community_id
    if previous == community_id:
        return False

    # Conditional on the membership we just read so two joins cannot both count.
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.community_id.is_(None) if previous is None else User.community_id == previous)
        .values(community_id=community_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        return False

    if previous is not None:
        await db.execute(
            update(Community)
            .where(Community.id == previous)
            .values(member_count=Community.member_count - 1)
            .execution_options(synchronize_session=False)
        )
    await db.execute(
        update(Community)
        .where(Community.id == community_id)
        .values(member_count=Community.member_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("User %s joined community %s", user_id, community_id)

    await ensure_active_challenge(db, community_id, now)
    if emitter is not None:
        await emitter.member_joined(community_id, user_id, now)
    await award_badges(db, redis, user_id, community_id, [COMMUNITY_BADGE], emitter, now)
    return True
