"""Progression tables.

Creates communities, users, user_progress, user_badges, recurring_milestones,
community_challenges, challenge_participants, community_activities and
progression_ledger.

Revision ID: 001_progression_tables
Revises: None
Create Date: 2026-03-02
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_progression_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Communities ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS communities (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            member_count INTEGER NOT NULL DEFAULT 0,
            total_co2_saved DOUBLE PRECISION NOT NULL DEFAULT 0,
            total_points BIGINT NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            display_name VARCHAR(64),
            community_id BIGINT REFERENCES communities(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_users_community_id
        ON users(community_id)
    """)

    # --- User Progress ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_progress (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            total_points BIGINT NOT NULL DEFAULT 0,
            total_co2_saved DOUBLE PRECISION NOT NULL DEFAULT 0,
            footprint_baseline DOUBLE PRECISION,
            missions_count INTEGER NOT NULL DEFAULT 0,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_active_date DATE,
            updated_at TIMESTAMPTZ
        )
    """)

    # --- User Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_badges (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            badge_id VARCHAR(64) NOT NULL,
            earned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_user_badges_user_badge UNIQUE (user_id, badge_id)
        )
    """)

    # --- Recurring Milestones ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS recurring_milestones (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(32) NOT NULL,
            template_id VARCHAR(64) NOT NULL,
            period VARCHAR(16) NOT NULL,
            period_key VARCHAR(16) NOT NULL,
            goal_target_value DOUBLE PRECISION NOT NULL,
            goal_unit VARCHAR(16) NOT NULL,
            goal_label VARCHAR(128) NOT NULL,
            current_value DOUBLE PRECISION NOT NULL DEFAULT 0,
            percent_complete INTEGER NOT NULL DEFAULT 0,
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            reward_bonus_points INTEGER NOT NULL DEFAULT 0,
            reward_badge_id VARCHAR(64),
            period_start TIMESTAMPTZ NOT NULL,
            period_end TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_milestones_user_type_period UNIQUE (user_id, type, period_key)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_milestones_status_period_end
        ON recurring_milestones(status, period_end)
    """)

    # --- Community Challenges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS community_challenges (
            id BIGSERIAL PRIMARY KEY,
            community_id BIGINT NOT NULL REFERENCES communities(id) ON DELETE CASCADE,
            title VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            goal_co2_kg DOUBLE PRECISION NOT NULL CHECK (goal_co2_kg > 0),
            current_co2_kg DOUBLE PRECISION NOT NULL DEFAULT 0,
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            completed_at TIMESTAMPTZ,
            participant_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_challenges_community_status
        ON community_challenges(community_id, status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_challenges_community_window
        ON community_challenges(community_id, start_date, end_date)
    """)

    # --- Challenge Participants ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS challenge_participants (
            id BIGSERIAL PRIMARY KEY,
            challenge_id BIGINT NOT NULL REFERENCES community_challenges(id) ON DELETE CASCADE,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_challenge_participants_challenge_user UNIQUE (challenge_id, user_id)
        )
    """)

    # --- Community Activities ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS community_activities (
            id BIGSERIAL PRIMARY KEY,
            community_id BIGINT NOT NULL REFERENCES communities(id) ON DELETE CASCADE,
            user_id BIGINT,
            type VARCHAR(32) NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_community_activities_feed
        ON community_activities(community_id, created_at DESC)
    """)

    # --- Progression Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS progression_ledger (
            id BIGSERIAL PRIMARY KEY,
            action_key VARCHAR(128) NOT NULL,
            scope VARCHAR(64) NOT NULL,
            user_id BIGINT NOT NULL,
            points INTEGER,
            multiplier DOUBLE PRECISION,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_progression_ledger_action_scope UNIQUE (action_key, scope)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS progression_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS community_activities CASCADE")
    op.execute("DROP TABLE IF EXISTS challenge_participants CASCADE")
    op.execute("DROP TABLE IF EXISTS community_challenges CASCADE")
    op.execute("DROP TABLE IF EXISTS recurring_milestones CASCADE")
    op.execute("DROP TABLE IF EXISTS user_badges CASCADE")
    op.execute("DROP TABLE IF EXISTS user_progress CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
    op.execute("DROP TABLE IF EXISTS communities CASCADE")
