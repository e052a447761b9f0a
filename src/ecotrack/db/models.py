"""ORM models for the progression pipeline.

Every counter column is written with ``col = col + :delta`` updates and every
uniqueness constraint below backs an ``INSERT .. ON CONFLICT DO NOTHING``.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ecotrack.db.base import Base, BigIntId, JSONType


# ---------------------------------------------------------------------------
# Communities and users
# ---------------------------------------------------------------------------


class Community(Base):
    """Maps to the 'communities' table."""

    __tablename__ = "communities"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_co2_saved: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    """Maps to the 'users' table (only the columns this service reads)."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    community_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("communities.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserProgress(Base):
    """Running totals and day-streak, one row per user."""

    __tablename__ = "user_progress"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
    )
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_co2_saved: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    footprint_baseline: Mapped[float | None] = mapped_column(Float, nullable=True)
    missions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_active_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserBadge(Base):
    """Earned badges; the set of rows for a user is UserProgress.badges."""

    __tablename__ = "user_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="uq_user_badges_user_badge"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    badge_id: Mapped[str] = mapped_column(String(64), nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Recurring milestones
# ---------------------------------------------------------------------------


class RecurringMilestone(Base):
    """Per-user, per-period progress goal."""

    __tablename__ = "recurring_milestones"
    __table_args__ = (
        UniqueConstraint("user_id", "type", "period_key", name="uq_milestones_user_type_period"),
        Index("idx_milestones_status_period_end", "status", "period_end"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    goal_target_value: Mapped[float] = mapped_column(Float, nullable=False)
    goal_unit: Mapped[str] = mapped_column(String(16), nullable=False)
    goal_label: Mapped[str] = mapped_column(String(128), nullable=False)
    current_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    percent_complete: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    reward_bonus_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reward_badge_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ---------------------------------------------------------------------------
# Community challenges
# ---------------------------------------------------------------------------


class CommunityChallenge(Base):
    """Shared CO2-reduction goal of a community."""

    __tablename__ = "community_challenges"
    __table_args__ = (
        Index("idx_challenges_community_status", "community_id", "status"),
        Index("idx_challenges_community_window", "community_id", "start_date", "end_date"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    community_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("communities.id", ondelete="CASCADE"), nullable=False,
    )
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    goal_co2_kg: Mapped[float] = mapped_column(Float, nullable=False)
    current_co2_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    participant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ChallengeParticipant(Base):
    """Join table: a row means the user is already counted in participant_count."""

    __tablename__ = "challenge_participants"
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participants_challenge_user"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    challenge_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("community_challenges.id", ondelete="CASCADE"), nullable=False,
    )
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Activity feed
# ---------------------------------------------------------------------------


class CommunityActivity(Base):
    """Append-only community feed entry."""

    __tablename__ = "community_activities"
    __table_args__ = (
        Index("idx_community_activities_feed", "community_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    community_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("communities.id", ondelete="CASCADE"), nullable=False,
    )
    user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    activity_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Idempotency ledger
# ---------------------------------------------------------------------------


class ProgressionLedger(Base):
    """One row per (action, pipeline step) that has been applied."""

    __tablename__ = "progression_ledger"
    __table_args__ = (
        UniqueConstraint("action_key", "scope", name="uq_progression_ledger_action_scope"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    action_key: Mapped[str] = mapped_column(String(128), nullable=False)
    scope: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    points: Mapped[int | None] = mapped_column(Integer, nullable=True)
    multiplier: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
