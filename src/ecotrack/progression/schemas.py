"""Pydantic models for progression actions and their outcomes."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ActionKind = Literal["mission", "compliance", "report"]


class ProgressionAction(BaseModel):
    """A completed, already-persisted qualifying user action."""

    action_key: str = Field(min_length=1, max_length=128)
    user_id: int
    co2_saved: float = Field(default=0.0, ge=0)
    base_points: int = Field(default=0, ge=0)
    kind: ActionKind = "mission"
    title: str = "a mission"
    category: str = ""
    occurred_at: datetime | None = None


class MilestoneCompletion(BaseModel):
    milestone_id: int
    type: str
    label: str
    target_value: float
    unit: str
    bonus_points: int
    badge_id: str | None = None
    badge_awarded: bool = False


class ChallengeContribution(BaseModel):
    challenge_id: int
    title: str
    co2_added: float
    current_co2_kg: float
    goal_co2_kg: float
    participant_count: int
    newly_registered: bool
    completed: bool


class ActionOutcome(BaseModel):
    action_key: str
    user_id: int
    points_awarded: int
    streak_multiplier: float
    co2_saved_awarded: float
    total_points: int
    total_co2_saved: float
    missions_count: int
    current_streak: int
    longest_streak: int
    newly_earned_badges: list[str] = []
    completed_milestones: list[MilestoneCompletion] = []
    challenge: ChallengeContribution | None = None
    replayed: bool = False
    failed_steps: list[str] = []
