"""Integration tests for the community activity feed."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from ecotrack.db.models import CommunityActivity
from ecotrack.progression.activity import (
    ActivityFeedEmitter,
    format_activity_text,
    get_community_feed,
)
from factories import NOW


class FlakySessionFactory:
    """Session factory whose first ``failures`` sessions fail on commit."""

    def __init__(self, session_factory, failures: int) -> None:
        self._session_factory = session_factory
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        session = self._session_factory()
        if self.calls <= self.failures:
            async def broken_commit():
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))

            session.commit = broken_commit  # type: ignore[method-assign]
        return session


class TestEmit:
    """Test appending entries."""

    @pytest.mark.asyncio
    async def test_mission_complete_entry(self, db_session, emitter, community, member):
        activity = await emitter.mission_complete(community.id, member.id, "Bike to work", 2.4, "transport", NOW)

        assert activity is not None
        rows, total = await get_community_feed(db_session, community.id)
        assert total == 1
        assert rows[0].type == "mission_complete"
        assert rows[0].user_id == member.id
        assert rows[0].activity_metadata == {
            "missionTitle": "Bike to work",
            "missionCo2Saved": 2.4,
            "missionCategory": "transport",
        }

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, emitter, community):
        with pytest.raises(ValueError):
            await emitter.emit(community.id, None, "level_up", {}, NOW)

    @pytest.mark.asyncio
    async def test_badge_entry_carries_badge_name(self, db_session, emitter, community, member):
        await emitter.badge_earned(community.id, member.id, "green_warrior", NOW)
        rows, _ = await get_community_feed(db_session, community.id)
        assert rows[0].activity_metadata == {"badgeId": "green_warrior", "badgeName": "Green Warrior"}

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, db_session, session_factory, community):
        flaky = FlakySessionFactory(session_factory, failures=2)
        emitter = ActivityFeedEmitter(flaky, max_attempts=3, retry_delay=0)

        activity = await emitter.member_joined(community.id, 1, NOW)

        assert activity is not None
        assert flaky.calls == 3
        _, total = await get_community_feed(db_session, community.id)
        assert total == 1

    @pytest.mark.asyncio
    async def test_gives_up_without_raising(self, db_session, session_factory, community):
        flaky = FlakySessionFactory(session_factory, failures=10)
        emitter = ActivityFeedEmitter(flaky, max_attempts=3, retry_delay=0)

        assert await emitter.challenge_completed(community.id, "Sprint", NOW) is None
        assert flaky.calls == 3
        _, total = await get_community_feed(db_session, community.id)
        assert total == 0


class TestCommunityFeed:
    """Test paginated reads."""

    @pytest.mark.asyncio
    async def test_reverse_chronological_pages(self, db_session, emitter, community, member):
        for i in range(5):
            await emitter.mission_complete(community.id, member.id, f"m{i}", 1.0, "food", NOW + timedelta(minutes=i))

        page1, total = await get_community_feed(db_session, community.id, page=1, limit=2)
        page3, _ = await get_community_feed(db_session, community.id, page=3, limit=2)

        assert total == 5
        assert [a.activity_metadata["missionTitle"] for a in page1] == ["m4", "m3"]
        assert [a.activity_metadata["missionTitle"] for a in page3] == ["m0"]

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, db_session, emitter, community, member):
        for i in range(3):
            await emitter.member_joined(community.id, member.id, NOW + timedelta(seconds=i))
        rows, _ = await get_community_feed(db_session, community.id, page=0, limit=2, max_limit=1)
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_other_communities_are_excluded(self, db_session, emitter, community, member):
        await emitter.member_joined(community.id, member.id, NOW)
        rows, total = await get_community_feed(db_session, community.id + 1)
        assert rows == [] and total == 0


class TestFormatActivityText:
    """Test feed rendering."""

    def _activity(self, activity_type: str, metadata: dict) -> CommunityActivity:
        return CommunityActivity(community_id=1, user_id=1, type=activity_type, activity_metadata=metadata, created_at=NOW)

    def test_mission_complete(self):
        text, subtext = format_activity_text(
            self._activity("mission_complete", {"missionTitle": "Bike to work", "missionCo2Saved": 2.4, "missionCategory": "transport"}),
            "Alex",
        )
        assert text == "Alex completed Bike to work"
        assert "2.4 kg" in subtext and "Transport" in subtext

    def test_personal_and_community_milestones(self):
        personal = self._activity("milestone", {"milestoneValue": 10, "milestoneUnit": "kg_co2", "milestoneLabel": "Save 10 kg"})
        assert format_activity_text(personal, "Alex")[0] == "Alex completed: Save 10 kg"
        community_wide = self._activity("milestone", {"milestoneValue": 120, "milestoneUnit": "kg_co2"})
        assert format_activity_text(community_wide, None)[0] == "Community saved 120 kg CO₂ this week"

    def test_unknown_user_name(self):
        assert format_activity_text(self._activity("member_joined", {}), None)[0] == "Someone joined the community"
