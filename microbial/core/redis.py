"""
Redis pub/sub for realtime notifications OR silent no-op.
Controlled by FF_USE_REDIS flag (and an empty REDIS_URL).

Channels are namespaced per scope: microbial:user:<id>, microbial:thread:<id>.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "microbial"

_redis_client = None


def channel(scope: str, key: str) -> str:
    return f"{CHANNEL_PREFIX}:{scope}:{key}"


def _enabled() -> bool:
    return get_flags().use_redis and bool(get_settings().redis_url)


async def _get_redis():
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis

        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
    return _redis_client


async def publish(scope: str, key: str, event_type: str, data: Any = None) -> bool:
    """
    Publish one event. Returns False when Redis is disabled or the publish failed.
    """
    if not _enabled():
        return False

    payload = json.dumps(
        {
            "type": event_type,
            "data": data,
            "ts": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )
    try:
        client = await _get_redis()
        await client.publish(channel(scope, key), payload)
    except Exception as e:
        # Never crash a turn on notification failure
        logger.warning("Redis publish failed (%s:%s, %s): %s", scope, key, event_type, e)
        return False
    return True


async def close_redis() -> None:
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
