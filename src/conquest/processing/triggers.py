"""Pending-activity triggers carried over a Redis stream."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from conquest.config import Settings

logger = logging.getLogger(__name__)


async def publish_pending(redis: object | None, settings: Settings, activity_id: str) -> str | None:
    """Append a processing trigger for an activity. Returns the stream entry id.

    Without Redis the trigger is skipped; the periodic pending sweep picks
    the activity up instead.
    """
    if redis is None:
        logger.info("No Redis configured, activity %s left for the pending sweep", activity_id)
        return None

    payload = {
        "activity_id": activity_id,
        "ts": datetime.now(timezone.utc).isoformat(),
    }
    try:
        return await redis.xadd(  # type: ignore[union-attr]
            settings.processing_stream,
            {"data": json.dumps(payload)},
            maxlen=100_000,
            approximate=True,
        )
    except Exception:
        logger.warning("Failed to publish trigger for activity %s", activity_id, exc_info=True)
        return None


def parse_trigger(raw_data: dict) -> str | None:
    """Extract the activity id from a stream entry."""
    data = dict(raw_data)
    data_str = raw_data.get("data")
    if isinstance(data_str, str):
        try:
            decoded = json.loads(data_str)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            data = decoded
    activity_id = data.get("activity_id")
    return str(activity_id) if activity_id else None
