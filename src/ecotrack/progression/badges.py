"""Threshold badge evaluation and conditional award."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ecotrack.db.dialect import insert_for
from ecotrack.db.models import UserBadge
from ecotrack.progression.catalog import (
    BADGES,
    BADGES_BY_ID,
    UNIT_COMMUNITY_JOIN,
    UNIT_KG_CO2,
    UNIT_MISSIONS,
    UNIT_STREAK,
    Badge,
)
from ecotrack.progression.periods import utc_now
from ecotrack.progression.push import push_to_user

if TYPE_CHECKING:
    from ecotrack.progression.activity import ActivityFeedEmitter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BadgeStats:
    missions_count: int
    total_co2_saved: float
    current_streak: int
    has_community: bool


def _qualifies(badge: Badge, stats: BadgeStats) -> bool:
    if badge.unit == UNIT_MISSIONS:
        return stats.missions_count >= badge.threshold
    if badge.unit == UNIT_KG_CO2:
        return stats.total_co2_saved >= badge.threshold
    if badge.unit == UNIT_STREAK:
        return stats.current_streak >= badge.threshold
    if badge.unit == UNIT_COMMUNITY_JOIN:
        return stats.has_community
    return False


def evaluate_badges(earned_badge_ids: Iterable[str], stats: BadgeStats) -> list[str]:
    """Catalog-ordered ids of badges that qualify and are not yet earned.

    Pure. The conditional write in :func:`award_badge` is what guards against
    concurrent evaluations awarding the same badge twice.
    """
    earned = set(earned_badge_ids)
    return [b.id for b in BADGES if b.id not in earned and _qualifies(b, stats)]


async def get_earned_badge_ids(db: AsyncSession, user_id: int) -> set[str]:
    result = await db.execute(select(UserBadge.badge_id).where(UserBadge.user_id == user_id))
    return set(result.scalars())


async def award_badge(
    db: AsyncSession,
    user_id: int,
    badge_id: str,
    now: datetime | None = None,
) -> bool:
    """Add ``badge_id`` to the user's set only if it is not already a member.

    Returns True only for the writer that created the row. Does not commit.
    """
    if badge_id not in BADGES_BY_ID:
        logger.warning("Badge not found: %s", badge_id)
        return False

    stmt = (
        insert_for(db, UserBadge)
        .values(user_id=user_id, badge_id=badge_id, earned_at=now or utc_now())
        .on_conflict_do_nothing(index_elements=["user_id", "badge_id"])
        .returning(UserBadge.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def announce_badge(
    redis: object | None,
    user_id: int,
    community_id: int | None,
    badge_id: str,
    emitter: ActivityFeedEmitter | None = None,
    now: datetime | None = None,
) -> None:
    """Feed entry and push notification for a freshly recorded badge."""
    badge = BADGES_BY_ID.get(badge_id)
    label = badge.label if badge else badge_id
    if community_id is not None and emitter is not None:
        await emitter.badge_earned(community_id, user_id, badge_id, now)
    await push_to_user(
        redis, user_id,
        f'Badge Earned: "{label}"',
        f"You unlocked the {label} badge",
        {"type": "badge_earned", "badgeId": badge_id},
        now,
    )


async def award_badges(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    community_id: int | None,
    badge_ids: Iterable[str],
    emitter: ActivityFeedEmitter | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Conditionally record each badge, commit, then announce the ones this call recorded."""
    now = now or utc_now()
    awarded = [badge_id for badge_id in badge_ids if await award_badge(db, user_id, badge_id, now)]
    await db.commit()

    for badge_id in awarded:
        await announce_badge(redis, user_id, community_id, badge_id, emitter, now)
    if awarded:
        logger.info("Awarded badges %s to user %s", awarded, user_id)
    return awarded
