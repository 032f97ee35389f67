# research_engine/services/caching.py
from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

import redis
from ..core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def make_cache_key(namespace: str, *parts: Any) -> str:
    """
    Build a bounded Redis key from arbitrary request parameters.

        make_cache_key("serper", "ai tools", 10)  -> "serper:3f1c..."
    """
    raw = json.dumps([str(p) for p in parts], ensure_ascii=False)
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


def _get_sync_redis() -> redis.Redis:
    """
    Create a fresh sync Redis client per call so Celery workers
    don't hold onto closed event loops.
    """
    return redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )


async def cached_get(
    key: str,
    set_value: Any | None = None,
    ttl: int | None = None,
) -> Any:
    """
    Async TTL cache backed by Redis, used for raw provider search responses.

        value = await cached_get("k")                  # read
        await cached_get("k", set_value=value, ttl=60) # write with TTL

    Redis being down is a cache miss, never an error.
    """
    client = _get_sync_redis()
    try:
        if set_value is None:
            val = client.get(key)
            return json.loads(val) if val is not None else None

        client.set(key, json.dumps(set_value, default=str), ex=ttl)
        return set_value
    except redis.RedisError as e:
        logger.debug("Redis cache unavailable for %s: %s", key, e)
        return None
    finally:
        client.close()
