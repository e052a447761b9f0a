"""Tests for the progression worker: stream message handling and sweeps."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select

from ecotrack.config import get_settings
from ecotrack.db.models import CommunityChallenge, RecurringMilestone
from ecotrack.progression.catalog import MILESTONE_TEMPLATES_BY_ID
from ecotrack.progression.challenges import get_active_challenge
from ecotrack.progression.milestones import STATUS_FAILED, resolve_or_create
from ecotrack.workers.progression_worker import (
    ProgressionWorkerSettings,
    consume_progression_actions,
    handle_action_message,
    parse_action_message,
    sweep_expired_challenges,
    shutdown,
    sweep_expired_milestones,
)
from ecotrack.workers.settings import WorkerSettings
from factories import FakeRedis, NOW

LONG_AGO = datetime(2020, 1, 15, 12, 0, tzinfo=timezone.utc)


def _id_key(msg_id: str) -> tuple[int, ...]:
    return tuple(int(part) for part in msg_id.split("-"))


class PendingStreamRedis(FakeRedis):
    """Serves a consumer's pending list by id; stops the loop after ``new_reads`` reads of new entries."""

    def __init__(self, entries: dict[str, dict], ctx: dict, new_reads: int = 1) -> None:
        super().__init__()
        self.entries = entries
        self.pending = set(entries)
        self.ctx = ctx
        self.new_reads = new_reads
        self.read_ids: list[str] = []

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        ((stream, stream_id),) = streams.items()
        self.read_ids.append(stream_id)
        if stream_id == ">":
            self.new_reads -= 1
            if self.new_reads <= 0:
                self.ctx["running"] = False
            return []
        after = _id_key(stream_id)
        batch = sorted((i for i in self.pending if _id_key(i) > after), key=_id_key)[:count]
        return [[stream, [(i, self.entries[i]) for i in batch]]]

    async def xack(self, stream: str, group: str, msg_id: str) -> int:
        self.pending.discard(msg_id)
        return await super().xack(stream, group, msg_id)


class RecordingHandler:
    """Stands in for message handling: records ids and acks, failing once for ids in ``fail_once``."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_once: set[str] = set()

    async def __call__(self, ctx: dict, msg_id: str, raw_data: dict) -> None:
        self.calls.append(msg_id)
        if msg_id in self.fail_once:
            self.fail_once.discard(msg_id)
            raise RuntimeError("database unavailable")
        settings = get_settings()
        await ctx["redis_client"].xack(settings.action_stream, settings.action_consumer_group, msg_id)


@pytest_asyncio.fixture
async def ctx(session_factory, fake_redis, emitter) -> dict:
    return {"redis_client": fake_redis, "session_factory": session_factory, "emitter": emitter}


def _payload(user_id: int, key: str = "mission-1", **overrides) -> dict:
    data = {
        "action_key": key,
        "user_id": user_id,
        "co2_saved": 2.5,
        "base_points": 10,
        "kind": "mission",
        "title": "Bike to work",
        "occurred_at": NOW.isoformat(),
    }
    data.update(overrides)
    return {"event": "action_completed", "data": json.dumps(data)}


class TestParseActionMessage:
    """Test stream entry decoding."""

    def test_json_document_under_data(self):
        action = parse_action_message(_payload(7))
        assert action.user_id == 7
        assert action.co2_saved == 2.5
        assert action.occurred_at == NOW

    def test_flat_string_fields(self):
        action = parse_action_message({"action_key": "k", "user_id": "7", "co2_saved": "1.5", "base_points": "3"})
        assert action.user_id == 7
        assert action.co2_saved == 1.5
        assert action.kind == "mission"

    def test_malformed_json(self):
        with pytest.raises(ValueError):
            parse_action_message({"data": "{not json"})

    def test_negative_co2_rejected(self):
        with pytest.raises(ValueError):
            parse_action_message(_payload(7, co2_saved=-1))


class TestHandleActionMessage:
    """Test coordinator dispatch and acknowledgement."""

    @pytest.mark.asyncio
    async def test_valid_message_is_recorded_and_acked(self, ctx, fake_redis, member):
        outcome = await handle_action_message(ctx, "1-0", _payload(member.id))

        assert outcome is not None
        assert outcome.points_awarded == 10
        settings = get_settings()
        assert fake_redis.acked == [(settings.action_stream, settings.action_consumer_group, "1-0")]

    @pytest.mark.asyncio
    async def test_redelivered_message_is_replayed(self, ctx, fake_redis, member):
        await handle_action_message(ctx, "1-0", _payload(member.id))
        outcome = await handle_action_message(ctx, "1-0", _payload(member.id))

        assert outcome.replayed is True
        assert outcome.total_points == 10
        assert len(fake_redis.acked) == 2

    @pytest.mark.asyncio
    async def test_malformed_message_is_acked_and_dropped(self, ctx, fake_redis):
        assert await handle_action_message(ctx, "2-0", {"data": "{oops"}) is None
        assert [a[2] for a in fake_redis.acked] == ["2-0"]

    @pytest.mark.asyncio
    async def test_unknown_user_is_acked_and_dropped(self, ctx, fake_redis):
        assert await handle_action_message(ctx, "3-0", _payload(9999)) is None
        assert [a[2] for a in fake_redis.acked] == ["3-0"]

    @pytest.mark.asyncio
    async def test_unexpected_failure_leaves_message_pending(self, ctx, fake_redis, member, monkeypatch):
        async def broken(self, action):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr("ecotrack.workers.progression_worker.ProgressionCoordinator.record_action", broken)

        with pytest.raises(RuntimeError):
            await handle_action_message(ctx, "4-0", _payload(member.id))
        assert fake_redis.acked == []


class TestSweeps:
    """Test the cron sweep jobs."""

    @pytest.mark.asyncio
    async def test_milestone_sweep(self, ctx, db_session, member):
        await resolve_or_create(db_session, member.id, MILESTONE_TEMPLATES_BY_ID["weekly_co2_easy"], LONG_AGO)
        await db_session.commit()

        assert await sweep_expired_milestones(ctx) == 1
        assert await sweep_expired_milestones(ctx) == 0

        statuses = (await db_session.execute(select(RecurringMilestone.status))).scalars().all()
        assert list(statuses) == [STATUS_FAILED]

    @pytest.mark.asyncio
    async def test_challenge_sweep(self, ctx, db_session, community):
        db_session.add(CommunityChallenge(
            community_id=community.id, title="Old", description="", goal_co2_kg=100, current_co2_kg=10,
            start_date=LONG_AGO, end_date=LONG_AGO.replace(day=20), status="active", participant_count=0,
            created_at=LONG_AGO,
        ))
        await db_session.commit()

        assert await sweep_expired_challenges(ctx) == 1
        assert await sweep_expired_challenges(ctx) == 0

    @pytest.mark.asyncio
    async def test_challenge_sweep_starts_a_new_challenge_for_members(self, ctx, db_session, community, member):
        community_id = community.id
        db_session.add(CommunityChallenge(
            community_id=community_id, title="Old", description="", goal_co2_kg=100, current_co2_kg=10,
            start_date=LONG_AGO, end_date=LONG_AGO.replace(day=20), status="active", participant_count=0,
            created_at=LONG_AGO,
        ))
        await db_session.commit()

        assert await sweep_expired_challenges(ctx) == 1

        current = await get_active_challenge(db_session, community_id)
        assert current is not None
        assert current.title != "Old"
        assert await sweep_expired_challenges(ctx) == 0
        assert (await get_active_challenge(db_session, community_id)).id == current.id


class TestWorkerSettings:
    """Test arq registration."""

    def test_settings_module_exports_worker_settings(self):
        assert WorkerSettings is ProgressionWorkerSettings

    def test_cron_jobs_registered(self):
        names = {job.name for job in ProgressionWorkerSettings.cron_jobs}
        assert names == {"cron:sweep_expired_milestones", "cron:sweep_expired_challenges"}

    def test_stream_consumer_is_not_a_queued_job(self):
        assert consume_progression_actions not in ProgressionWorkerSettings.functions


class TestConsumeProgressionActions:
    """Test the stream read loop."""

    @pytest.fixture
    def handler(self, monkeypatch) -> RecordingHandler:
        handler = RecordingHandler()
        monkeypatch.setattr("ecotrack.workers.progression_worker.handle_action_message", handler)
        return handler

    @pytest.mark.asyncio
    async def test_pages_through_backlog_larger_than_a_batch(self, handler, monkeypatch):
        monkeypatch.setattr(get_settings(), "action_batch_size", 2)
        ctx: dict = {"running": True}
        redis = PendingStreamRedis({f"{i}-0": {"data": "{}"} for i in range(5)}, ctx)
        ctx["redis_client"] = redis

        await consume_progression_actions(ctx)

        assert handler.calls == ["0-0", "1-0", "2-0", "3-0", "4-0"]
        assert redis.pending == set()
        assert redis.read_ids == ["0", "1-0", "3-0", "4-0", ">"]

    @pytest.mark.asyncio
    async def test_failed_entry_is_redelivered_without_restart(self, handler, monkeypatch):
        settings = get_settings()
        monkeypatch.setattr(settings, "action_batch_size", 2)
        monkeypatch.setattr(settings, "action_pending_retry_seconds", 0)
        ctx: dict = {"running": True}
        redis = PendingStreamRedis({"0-0": {"data": "{}"}, "1-0": {"data": "{}"}}, ctx, new_reads=2)
        ctx["redis_client"] = redis
        handler.fail_once.add("1-0")

        await consume_progression_actions(ctx)

        assert handler.calls == ["0-0", "1-0", "1-0"]
        assert redis.pending == set()
        assert redis.read_ids == ["0", "1-0", ">", "0", "1-0", ">"]


class TestShutdown:
    """Test worker teardown."""

    @pytest.mark.asyncio
    async def test_cancels_consumer_and_closes_redis(self, fake_redis):
        started = asyncio.Event()

        async def consumer():
            started.set()
            await asyncio.sleep(3600)

        task = asyncio.create_task(consumer())
        await started.wait()
        ctx = {"running": True, "redis_client": fake_redis, "consumer_task": task}

        await shutdown(ctx)

        assert ctx["running"] is False
        assert task.cancelled()
        assert fake_redis.closed is True
