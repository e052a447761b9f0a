"""Community CO2 challenges.

State machine: upcoming -> active -> completed | failed. At most one active
challenge per community is observed at any instant; ``ensure_active_challenge``
serializes creators by taking the community row's write lock first.

``contribute`` runs as three independent writes: the CO2 increment (guarded by
the progression ledger so a retried action never double-counts), participant
registration (idempotent on its own), and the completion transition. A crash
between them is repaired by retrying the same action.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ecotrack.db.dialect import insert_for
from ecotrack.db.models import ChallengeParticipant, Community, CommunityChallenge
from ecotrack.errors import InvalidStateError, NotFoundError
from ecotrack.progression.catalog import CHALLENGE_TEMPLATES
from ecotrack.progression.ledger import claim
from ecotrack.progression.periods import ensure_utc, utc_now
from ecotrack.progression.push import push_to_user
from ecotrack.progression.schemas import ChallengeContribution

if TYPE_CHECKING:
    from ecotrack.progression.activity import ActivityFeedEmitter

logger = logging.getLogger(__name__)

STATUS_UPCOMING = "upcoming"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

VALID_TRANSITIONS: dict[str, list[str]] = {
    STATUS_UPCOMING: [STATUS_ACTIVE],
    STATUS_ACTIVE: [STATUS_COMPLETED, STATUS_FAILED],
    STATUS_COMPLETED: [],
    STATUS_FAILED: [],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Raise InvalidStateError if the transition is not allowed."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidStateError(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}"
        )


def _is_open(now: datetime) -> tuple[Any, ...]:
    return (
        CommunityChallenge.status == STATUS_ACTIVE,
        CommunityChallenge.start_date <= now,
        CommunityChallenge.end_date >= now,
    )


async def get_active_challenge(
    db: AsyncSession,
    community_id: int,
    now: datetime | None = None,
) -> CommunityChallenge | None:
    """The community's active challenge whose window contains ``now``."""
    now = ensure_utc(now) or utc_now()
    result = await db.execute(
        select(CommunityChallenge)
        .where(CommunityChallenge.community_id == community_id, *_is_open(now))
        .order_by(CommunityChallenge.start_date.desc(), CommunityChallenge.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _lock_community(db: AsyncSession, community_id: int) -> None:
    """Take the community row's write lock for the rest of the transaction.

    A no-op UPDATE is a row lock on PostgreSQL and the database write lock on
    SQLite, so concurrent creators queue here.
    """
    result = await db.execute(
        update(Community)
        .where(Community.id == community_id)
        .values(id=Community.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Community {community_id} not found")


def _new_challenge(
    community_id: int,
    title: str,
    description: str,
    goal_co2_kg: float,
    duration_days: int,
    now: datetime,
) -> CommunityChallenge:
    return CommunityChallenge(
        community_id=community_id,
        title=title,
        description=description,
        goal_co2_kg=goal_co2_kg,
        current_co2_kg=0.0,
        start_date=now,
        end_date=now + timedelta(days=duration_days),
        status=STATUS_ACTIVE,
        participant_count=0,
        created_at=now,
    )


async def ensure_active_challenge(
    db: AsyncSession,
    community_id: int,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> CommunityChallenge:
    """Return the community's active challenge, starting one from a template if there is none."""
    now = ensure_utc(now) or utc_now()
    await _lock_community(db, community_id)

    existing = await get_active_challenge(db, community_id, now)
    if existing is not None:
        await db.commit()
        return existing

    template = (rng or random).choice(CHALLENGE_TEMPLATES)
    challenge = _new_challenge(
        community_id, template.title, template.description, template.goal_co2_kg, template.duration_days, now,
    )
    db.add(challenge)
    await db.commit()
    logger.info("Started challenge %r for community %s", challenge.title, community_id)
    return challenge


async def create_challenge(
    db: AsyncSession,
    community_id: int,
    title: str,
    description: str = "",
    goal_co2_kg: float = 500,
    duration_days: int = 7,
    now: datetime | None = None,
) -> CommunityChallenge:
    """Start a custom challenge. Fails if the community already has an active one."""
    if goal_co2_kg <= 0 or duration_days <= 0:
        raise InvalidStateError("Challenge goal and duration must be positive")

    now = ensure_utc(now) or utc_now()
    await _lock_community(db, community_id)
    if await get_active_challenge(db, community_id, now) is not None:
        await db.rollback()
        raise InvalidStateError(f"Community {community_id} already has an active challenge")

    challenge = _new_challenge(community_id, title, description, goal_co2_kg, duration_days, now)
    db.add(challenge)
    await db.commit()
    return challenge


async def contribute_co2(
    db: AsyncSession,
    challenge_id: int,
    amount: float,
    now: datetime | None = None,
) -> float | None:
    """Atomically add ``amount`` to an open challenge. Returns the new total, None if not open.

    Does not commit.
    """
    if amount < 0:
        msg = "Challenge contributions cannot be negative"
        raise ValueError(msg)
    now = ensure_utc(now) or utc_now()
    result = await db.execute(
        update(CommunityChallenge)
        .where(CommunityChallenge.id == challenge_id, *_is_open(now))
        .values(current_co2_kg=CommunityChallenge.current_co2_kg + amount)
        .returning(CommunityChallenge.current_co2_kg)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def register_participant(
    db: AsyncSession,
    challenge_id: int,
    user_id: int,
    now: datetime | None = None,
) -> bool:
    """Count ``user_id`` toward participant_count at most once. Safe to retry. Does not commit."""
    result = await db.execute(
        insert_for(db, ChallengeParticipant)
        .values(challenge_id=challenge_id, user_id=user_id, joined_at=now or utc_now())
        .on_conflict_do_nothing(index_elements=["challenge_id", "user_id"])
        .returning(ChallengeParticipant.id)
    )
    if result.scalar_one_or_none() is None:
        return False

    await db.execute(
        update(CommunityChallenge)
        .where(CommunityChallenge.id == challenge_id)
        .values(participant_count=CommunityChallenge.participant_count + 1)
        .execution_options(synchronize_session=False)
    )
    return True


async def complete_if_reached(db: AsyncSession, challenge_id: int, now: datetime | None = None) -> bool:
    """active -> completed the first time the goal is reached. Does not commit.

    Only inside the window: once ``end_date`` has passed the row belongs to the
    expiry sweep, even if a retried contribution finds the goal already met.
    """
    now = ensure_utc(now) or utc_now()
    result = await db.execute(
        update(CommunityChallenge)
        .where(
            CommunityChallenge.id == challenge_id,
            CommunityChallenge.status == STATUS_ACTIVE,
            CommunityChallenge.end_date >= now,
            CommunityChallenge.current_co2_kg >= CommunityChallenge.goal_co2_kg,
        )
        .values(status=STATUS_COMPLETED, completed_at=now)
        .returning(CommunityChallenge.id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none() is not None


async def contribute(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    community_id: int | None,
    co2_saved: float,
    *,
    action_key: str | None = None,
    emitter: ActivityFeedEmitter | None = None,
    now: datetime | None = None,
) -> ChallengeContribution | None:
    """Apply one action to the community's active challenge. No challenge -> None."""
    if community_id is None:
        return None
    now = ensure_utc(now) or utc_now()

    challenge = await get_active_challenge(db, community_id, now)
    if challenge is None:
        return None

    co2_added = 0.0
    if action_key is None or await claim(db, action_key, f"challenge:{challenge.id}", user_id, now=now):
        if await contribute_co2(db, challenge.id, co2_saved, now) is None:
            # Window closed or challenge resolved since the read
            await db.rollback()
            return None
        co2_added = co2_saved
    await db.commit()

    newly_registered = await register_participant(db, challenge.id, user_id, now)
    await db.commit()

    completed = await complete_if_reached(db, challenge.id, now)
    await db.commit()

    if completed:
        logger.info("Challenge %s completed by community %s", challenge.id, community_id)
        if emitter is not None:
            await emitter.challenge_completed(community_id, challenge.title, now)
        await push_to_user(
            redis, user_id,
            "Community goal reached!",
            f"{challenge.title} is complete. Everyone contributed to this win.",
            {"type": "challenge_completed", "challengeId": challenge.id},
            now,
        )

    refreshed = await db.get(CommunityChallenge, challenge.id, populate_existing=True)
    return ChallengeContribution(
        challenge_id=challenge.id,
        title=refreshed.title,
        co2_added=co2_added,
        current_co2_kg=refreshed.current_co2_kg,
        goal_co2_kg=refreshed.goal_co2_kg,
        participant_count=refreshed.participant_count,
        newly_registered=newly_registered,
        completed=completed,
    )


async def expire_challenges(db: AsyncSession, now: datetime | None = None) -> int:
    """Fail every active challenge whose end date has passed. Idempotent."""
    now = ensure_utc(now) or utc_now()
    result = await db.execute(
        update(CommunityChallenge)
        .where(
            CommunityChallenge.status == STATUS_ACTIVE,
            CommunityChallenge.end_date < now,
        )
        .values(status=STATUS_FAILED)
        .returning(CommunityChallenge.id)
        .execution_options(synchronize_session=False)
    )
    expired = len(result.all())
    await db.commit()
    logger.info("Challenge sweep complete: %d expired", expired)
    return expired


async def rearm_challenges(
    db: AsyncSession,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> list[int]:
    """Start a challenge in every community with members and no open challenge.

    Covers communities whose last challenge was completed or swept. Returns the
    ids of the communities that had none.
    """
    now = ensure_utc(now) or utc_now()
    has_open = (
        select(CommunityChallenge.id)
        .where(CommunityChallenge.community_id == Community.id, *_is_open(now))
        .exists()
    )
    result = await db.execute(
        select(Community.id)
        .where(Community.member_count > 0, ~has_open)
        .order_by(Community.id)
    )
    community_ids = list(result.scalars().all())

    await db.commit()

    for community_id in community_ids:
        # Re-checked under the community lock, so a concurrent creator wins cleanly
        await ensure_active_challenge(db, community_id, now, rng)
    if community_ids:
        logger.info("Re-armed challenges for %d communities", len(community_ids))
    return community_ids


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_challenge_history(db: AsyncSession, community_id: int, limit: int = 20) -> list[CommunityChallenge]:
    result = await db.execute(
        select(CommunityChallenge)
        .where(CommunityChallenge.community_id == community_id)
        .order_by(CommunityChallenge.created_at.desc(), CommunityChallenge.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_current_or_last(
    db: AsyncSession,
    community_id: int,
    now: datetime | None = None,
) -> CommunityChallenge | None:
    """The active challenge, otherwise the most recently completed one."""
    active = await get_active_challenge(db, community_id, now)
    if active is not None:
        return active
    result = await db.execute(
        select(CommunityChallenge)
        .where(
            CommunityChallenge.community_id == community_id,
            CommunityChallenge.status == STATUS_COMPLETED,
        )
        .order_by(CommunityChallenge.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def challenge_progress(challenge: CommunityChallenge, now: datetime | None = None) -> dict[str, int]:
    """Percent toward the goal (clamped to 100) and time left in the window."""
    now = ensure_utc(now) or utc_now()
    remaining = max(0.0, (ensure_utc(challenge.end_date) - now).total_seconds())  # type: ignore[operator]
    percent = (
        min(100, round(challenge.current_co2_kg / challenge.goal_co2_kg * 100))
        if challenge.goal_co2_kg > 0
        else 0
    )
    return {
        "progress_percent": percent,
        "days_remaining": int(remaining // 86400),
        "hours_remaining": int((remaining % 86400) // 3600),
    }
