"""Static catalogs: badges, milestone templates, challenge templates.

Loaded once at import and referenced by id everywhere else.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from ecotrack.progression.periods import MONTHLY, WEEKLY

# Badge / goal units
UNIT_MISSIONS = "missions"
UNIT_KG_CO2 = "kg_co2"
UNIT_STREAK = "streak"
UNIT_COMMUNITY_JOIN = "community_join"
UNIT_CUSTOM = "custom"  # awarded only by an explicit reward (never by threshold evaluation)


@dataclass(frozen=True)
class Badge:
    id: str
    label: str
    threshold: float
    unit: str


BADGES: tuple[Badge, ...] = (
    Badge("first_step", "First Step", 1, UNIT_MISSIONS),
    Badge("eco_starter", "Eco Starter", 10, UNIT_KG_CO2),
    Badge("green_warrior", "Green Warrior", 50, UNIT_KG_CO2),
    Badge("climate_hero", "Climate Hero", 100, UNIT_KG_CO2),
    Badge("week_streak", "7-Day Streak", 7, UNIT_STREAK),
    Badge("month_streak", "30-Day Streak", 30, UNIT_STREAK),
    Badge("community_builder", "Community Builder", 1, UNIT_COMMUNITY_JOIN),
    # Milestone rewards
    Badge("weekly_eco_champion", "Weekly Eco Champion", 1, UNIT_CUSTOM),
    Badge("monthly_eco_champion", "Monthly Eco Champion", 1, UNIT_CUSTOM),
    Badge("mission_marathon", "Mission Marathon", 1, UNIT_CUSTOM),
)

BADGES_BY_ID: MappingProxyType[str, Badge] = MappingProxyType({b.id: b for b in BADGES})


# --- Recurring milestones ---

DIFFICULTY_EASY = "easy"
DIFFICULTY_MEDIUM = "medium"
DIFFICULTY_HARD = "hard"


@dataclass(frozen=True)
class MilestoneTemplate:
    id: str
    type: str
    period: str
    difficulty: str | None
    target_value: float
    unit: str
    label: str
    bonus_points: int
    badge_id: str | None = None


MILESTONE_TEMPLATES: tuple[MilestoneTemplate, ...] = (
    MilestoneTemplate("weekly_co2_easy", "weekly_co2", WEEKLY, DIFFICULTY_EASY,
                      10, UNIT_KG_CO2, "Save 10 kg CO₂ this week", 50),
    MilestoneTemplate("weekly_co2_medium", "weekly_co2", WEEKLY, DIFFICULTY_MEDIUM,
                      25, UNIT_KG_CO2, "Save 25 kg CO₂ this week", 100),
    MilestoneTemplate("weekly_co2_hard", "weekly_co2", WEEKLY, DIFFICULTY_HARD,
                      50, UNIT_KG_CO2, "Save 50 kg CO₂ this week", 200, "weekly_eco_champion"),
    MilestoneTemplate("weekly_missions_5", "weekly_missions", WEEKLY, None,
                      5, UNIT_MISSIONS, "Complete 5 missions this week", 75),
    MilestoneTemplate("monthly_co2_easy", "monthly_co2", MONTHLY, DIFFICULTY_EASY,
                      40, UNIT_KG_CO2, "Save 40 kg CO₂ this month", 200),
    MilestoneTemplate("monthly_co2_medium", "monthly_co2", MONTHLY, DIFFICULTY_MEDIUM,
                      100, UNIT_KG_CO2, "Save 100 kg CO₂ this month", 400),
    MilestoneTemplate("monthly_co2_hard", "monthly_co2", MONTHLY, DIFFICULTY_HARD,
                      200, UNIT_KG_CO2, "Save 200 kg CO₂ this month", 800, "monthly_eco_champion"),
    MilestoneTemplate("monthly_missions_20", "monthly_missions", MONTHLY, None,
                      20, UNIT_MISSIONS, "Complete 20 missions this month", 300, "mission_marathon"),
)

MILESTONE_TEMPLATES_BY_ID: MappingProxyType[str, MilestoneTemplate] = MappingProxyType(
    {t.id: t for t in MILESTONE_TEMPLATES}
)


# --- Community challenges ---


@dataclass(frozen=True)
class ChallengeTemplate:
    title: str
    description: str
    goal_co2_kg: float
    duration_days: int


CHALLENGE_TEMPLATES: tuple[ChallengeTemplate, ...] = (
    ChallengeTemplate(
        "Save 500 kg CO₂ This Week",
        "Every mission counts. Bike, eat green, unplug. Together we hit 500 kg.",
        500,
        7,
    ),
    ChallengeTemplate(
        "Hit 1,000 kg This Month",
        "Our biggest challenge yet. 30 days, 1,000 kg, one community.",
        1000,
        30,
    ),
    ChallengeTemplate(
        "100 kg Weekend Sprint",
        "Just 48 hours. Make every action count this weekend.",
        100,
        2,
    ),
    ChallengeTemplate(
        "Green Week: 250 kg Challenge",
        "Can we save 250 kg together in 7 days? Start with one mission today.",
        250,
        7,
    ),
)
