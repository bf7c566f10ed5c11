"""Durable store connection (Redis) shared by the response cache and event store.

If ``REDIS_URL`` is not configured, or Redis cannot be reached at startup,
both consumers degrade to in-memory behaviour for the process lifetime.
"""

from __future__ import annotations

import logging

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)


def create_redis(redis_url: str) -> redis.Redis:
    """Create an async Redis client (lazy: no connection is made yet)."""
    return redis.from_url(redis_url, decode_responses=True)


async def connect_redis(redis_url: str | None) -> redis.Redis | None:
    """Create a client and verify it with PING.

    Returns None when no URL is configured or Redis is unreachable, so
    callers fall back to in-memory stores (fail-open for availability).
    """
    if not redis_url:
        logger.info("REDIS_URL not set, using in-memory cache and no durable event store")
        return None
    client = create_redis(redis_url)
    try:
        await client.ping()
    except (RedisConnectionError, RedisTimeoutError, OSError):
        logger.warning("Redis unavailable at startup, degrading to in-memory stores", exc_info=True)
        await client.aclose()
        return None
    logger.info("Durable store connected")
    return client
