"""Challenge state machine and progress math tests."""

from datetime import datetime, timedelta, timezone

import pytest

from ecotrack.db.models import CommunityChallenge
from ecotrack.errors import InvalidStateError
from ecotrack.progression.challenges import (
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_UPCOMING,
    challenge_progress,
    validate_transition,
)

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class TestValidateTransition:
    """Test allowed and forbidden transitions."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [(STATUS_UPCOMING, STATUS_ACTIVE), (STATUS_ACTIVE, STATUS_COMPLETED), (STATUS_ACTIVE, STATUS_FAILED)],
    )
    def test_valid(self, current, target):
        validate_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (STATUS_COMPLETED, STATUS_ACTIVE),
            (STATUS_COMPLETED, STATUS_FAILED),
            (STATUS_FAILED, STATUS_COMPLETED),
            (STATUS_UPCOMING, STATUS_COMPLETED),
            (STATUS_ACTIVE, STATUS_UPCOMING),
        ],
    )
    def test_invalid(self, current, target):
        with pytest.raises(InvalidStateError):
            validate_transition(current, target)

    def test_unknown_status(self):
        with pytest.raises(InvalidStateError):
            validate_transition("archived", STATUS_ACTIVE)


class TestChallengeProgress:
    """Test progress percent and remaining time."""

    def _challenge(self, current: float, goal: float, ends_in: timedelta) -> CommunityChallenge:
        return CommunityChallenge(
            community_id=1, title="t", description="", goal_co2_kg=goal, current_co2_kg=current,
            start_date=NOW - timedelta(days=1), end_date=NOW + ends_in, status=STATUS_ACTIVE,
            participant_count=0,
        )

    def test_percent_and_time_left(self):
        progress = challenge_progress(self._challenge(125, 500, timedelta(days=2, hours=5)), NOW)
        assert progress == {"progress_percent": 25, "days_remaining": 2, "hours_remaining": 5}

    def test_percent_clamped_at_100(self):
        progress = challenge_progress(self._challenge(620, 500, timedelta(hours=1)), NOW)
        assert progress["progress_percent"] == 100

    def test_ended_window_has_no_time_left(self):
        progress = challenge_progress(self._challenge(10, 500, -timedelta(hours=3)), NOW)
        assert progress["days_remaining"] == 0
        assert progress["hours_remaining"] == 0
