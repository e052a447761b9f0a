"""Per-step idempotency ledger for progression actions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ecotrack.db.dialect import insert_for
from ecotrack.db.models import ProgressionLedger
from ecotrack.progression.periods import utc_now


async def claim(
    db: AsyncSession,
    action_key: str,
    scope: str,
    user_id: int,
    *,
    points: int | None = None,
    multiplier: float | None = None,
    now: datetime | None = None,
) -> bool:
    """Record that ``scope`` of ``action_key`` is being applied.

    Returns True for the one writer that created the entry, False when the step
    was already applied. The entry becomes visible with the caller's commit, so
    it must be written in the same transaction as the change it guards.
    """
    stmt = (
        insert_for(db, ProgressionLedger)
        .values(
            action_key=action_key,
            scope=scope,
            user_id=user_id,
            points=points,
            multiplier=multiplier,
            created_at=now or utc_now(),
        )
        .on_conflict_do_nothing(index_elements=["action_key", "scope"])
        .returning(ProgressionLedger.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def get_entry(db: AsyncSession, action_key: str, scope: str) -> ProgressionLedger | None:
    result = await db.execute(
        select(ProgressionLedger).where(
            ProgressionLedger.action_key == action_key,
            ProgressionLedger.scope == scope,
        )
    )
    return result.scalar_one_or_none()
