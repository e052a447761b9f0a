"""Push notifications over Redis pub/sub for per-user delivery."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from ecotrack.config import get_settings
from ecotrack.progression.periods import utc_now

logger = logging.getLogger(__name__)


async def push_to_user(
    redis: object | None,
    user_id: int,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> bool:
    """Publish a notification to ``ws:user:{user_id}``.

    Fire-and-forget: returns False when there is no Redis client or the publish
    failed. Failures are logged and never propagated.
    """
    if redis is None:
        return False

    payload = {
        "event": "notification",
        "data": {
            "title": title,
            "body": body,
            "data": data or {},
            "timestamp": (now or utc_now()).isoformat(),
        },
    }
    channel = f"{get_settings().push_channel_prefix}{user_id}"
    try:
        await redis.publish(channel, json.dumps(payload))  # type: ignore[attr-defined]
    except Exception:
        logger.warning("Failed to push notification via %s", channel, exc_info=True)
        return False
    return True
