"""arq worker for the progression pipeline.

Consumes completed user actions from the ``progression:actions`` Redis Stream
and runs each through the ProgressionCoordinator, and runs the expiry sweeps
for recurring milestones and community challenges on a cron schedule.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any

import redis.asyncio as aioredis
from arq import cron

from ecotrack.config import get_settings
from ecotrack.database import close_db, get_session_factory, init_db
from ecotrack.errors import NotFoundError
from ecotrack.logging_config import setup_logging
from ecotrack.progression.activity import ActivityFeedEmitter
from ecotrack.progression.challenges import expire_challenges, rearm_challenges
from ecotrack.progression.coordinator import ProgressionCoordinator
from ecotrack.progression.milestones import expire_milestones
from ecotrack.progression.schemas import ActionOutcome, ProgressionAction

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB, Redis, the feed emitter and the consumer group, then start the consumer."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    try:
        await redis_client.xgroup_create(
            settings.action_stream, settings.action_consumer_group, id="0", mkstream=True,
        )
        logger.info("Created consumer group %s for %s", settings.action_consumer_group, settings.action_stream)
    except aioredis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise

    session_factory = get_session_factory()
    ctx["redis_client"] = redis_client
    ctx["session_factory"] = session_factory
    ctx["emitter"] = ActivityFeedEmitter(
        session_factory,
        max_attempts=settings.feed_retry_attempts,
        retry_delay=settings.feed_retry_delay_seconds,
    )
    ctx["running"] = True

    # The stream reader lives as long as the worker process, outside arq's job queue
    ctx["consumer_task"] = asyncio.create_task(consume_progression_actions(ctx))
    logger.info("Progression worker started (consumer=%s)", settings.action_consumer_name)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Stop the consumer and clean up on worker shutdown."""
    ctx["running"] = False

    consumer_task: asyncio.Task[None] | None = ctx.get("consumer_task")
    if consumer_task is not None:
        consumer_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await consumer_task

    redis_client: aioredis.Redis | None = ctx.get("redis_client")
    if redis_client:
        await redis_client.aclose()
    await close_db()

    logger.info("Progression worker shut down")


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------


async def sweep_expired_milestones(ctx: dict) -> int:  # type: ignore[type-arg]
    """Daily: fail every active milestone whose window has closed."""
    async with ctx["session_factory"]() as db:
        return await expire_milestones(db)


async def sweep_expired_challenges(ctx: dict) -> int:  # type: ignore[type-arg]
    """Hourly: fail every active challenge past its end date, then start a new one where none is open."""
    async with ctx["session_factory"]() as db:
        expired = await expire_challenges(db)
        await rearm_challenges(db)
    return expired


# ---------------------------------------------------------------------------
# Action stream
# ---------------------------------------------------------------------------


def parse_action_message(raw_data: dict[str, Any]) -> ProgressionAction:
    """Decode a stream entry: a JSON document under ``data``, or the flat fields.

    Raises ValueError (including pydantic's ValidationError) for a malformed entry.
    """
    data_str = raw_data.get("data")
    if isinstance(data_str, str):
        data = json.loads(data_str)
    else:
        data = dict(raw_data)
    return ProgressionAction.model_validate(data)


async def handle_action_message(ctx: dict, msg_id: str, raw_data: dict[str, Any]) -> ActionOutcome | None:  # type: ignore[type-arg]
    """Run one stream entry through the coordinator and acknowledge it.

    Malformed entries and unknown users are acknowledged and dropped. Any other
    failure propagates and leaves the entry pending so it is retried; the
    coordinator applies only the steps that did not complete.
    """
    settings = get_settings()
    redis_client = ctx["redis_client"]

    try:
        action = parse_action_message(raw_data)
    except ValueError:
        logger.warning("Dropping malformed progression action %s", msg_id, exc_info=True)
        await redis_client.xack(settings.action_stream, settings.action_consumer_group, msg_id)
        return None

    try:
        async with ctx["session_factory"]() as db:
            coordinator = ProgressionCoordinator(db, redis_client, ctx["emitter"])
            outcome = await coordinator.record_action(action)
    except NotFoundError:
        logger.warning("Dropping progression action %s: %s", msg_id, action.action_key, exc_info=True)
        await redis_client.xack(settings.action_stream, settings.action_consumer_group, msg_id)
        return None

    await redis_client.xack(settings.action_stream, settings.action_consumer_group, msg_id)
    if outcome.failed_steps:
        logger.warning("Action %s recorded with failed steps: %s", action.action_key, outcome.failed_steps)
    return outcome


async def consume_progression_actions(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop.

    Pages through this consumer's pending entries first (reading from an explicit
    id returns pending entries after it), then reads new ones with ``>``. Every
    ``action_pending_retry_seconds`` it pages through the pending list again, so
    entries left unacknowledged by a failure are redelivered without a restart.
    """
    settings = get_settings()
    redis_client: aioredis.Redis = ctx["redis_client"]
    stream_id = "0"
    backlog_read_at = time.monotonic()

    while ctx.get("running", True):
        reading_backlog = stream_id != ">"

        try:
            events = await redis_client.xreadgroup(
                groupname=settings.action_consumer_group,
                consumername=settings.action_consumer_name,
                streams={settings.action_stream: stream_id},
                count=settings.action_batch_size,
                block=None if reading_backlog else settings.action_block_ms,
            )
        except aioredis.RedisError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        messages = [message for _, batch in events or [] for message in batch]
        if reading_backlog and not messages:
            stream_id = ">"
            backlog_read_at = time.monotonic()
            continue

        for msg_id, raw_data in messages:
            try:
                # Entries deleted from the stream come back from the pending list without fields
                await handle_action_message(ctx, msg_id, raw_data or {})
            except Exception:
                logger.exception("Failed to process progression action %s", msg_id)

        if reading_backlog:
            stream_id = messages[-1][0]
        elif time.monotonic() - backlog_read_at >= settings.action_pending_retry_seconds:
            stream_id = "0"


_settings = get_settings()


class ProgressionWorkerSettings:
    """arq worker settings for the progression pipeline."""

    functions = [
        sweep_expired_milestones,
        sweep_expired_challenges,
    ]
    cron_jobs = [
        cron(
            sweep_expired_milestones,
            hour={_settings.milestone_sweep_hour},
            minute={_settings.milestone_sweep_minute},
        ),
        cron(sweep_expired_challenges, minute={_settings.challenge_sweep_minute}),
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 4
    job_timeout = 300
