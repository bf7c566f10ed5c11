"""Webhook event store: durable, TTL-bounded history of verified events.

Every event is kept separately (full history within the retention window,
not last-write-wins). Key pattern:

    webhook:event:{resource_type}:{resource_id}:{received_at_ms}:{nonce}

Redis entries are written with SETEX (retention TTL) together with a
sorted-set index scored by receipt time, in one MULTI transaction, so a
reader never sees a half-written event. A periodic purge removes index
entries past the retention window; TTL expiry covers the values
themselves.

Without a durable backend the gateway uses ``MemoryEventStore``: events are
dispatched and kept for the process lifetime, purged on the same schedule.
``NullEventStore`` records nothing at all."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Protocol

from commerce_gateway.errors import StorageError
from commerce_gateway.webhooks.models import WebhookEvent

logger = logging.getLogger(__name__)

KEY_PREFIX = "webhook:event"
INDEX_KEY = "webhook:events:index"
DEFAULT_RETENTION_SECONDS = 86400  # 24 hours


def event_key(event: WebhookEvent) -> str:
    """Storage key for one event (unique per receipt)."""
    received_ms = int(event.received_at * 1000)
    return (
        f"{KEY_PREFIX}:{event.resource_type}:{event.resource_id}:"
        f"{received_ms}:{uuid.uuid4().hex[:8]}"
    )


class EventStore(Protocol):
    """Storage contract for verified webhook events."""

    durable: bool

    async def store(self, event: WebhookEvent) -> None: ...

    async def recent(self, limit: int = 50) -> list[WebhookEvent]: ...

    async def purge_older_than(self, seconds: float) -> int: ...

    async def count(self) -> int: ...


class NullEventStore:
    """No-op store for deployments that want dispatch without any history."""

    durable = False

    async def store(self, event: WebhookEvent) -> None:
        return None

    async def recent(self, limit: int = 50) -> list[WebhookEvent]:
        return []

    async def purge_older_than(self, seconds: float) -> int:
        return 0

    async def count(self) -> int:
        return 0


class MemoryEventStore:
    """Process-lifetime store. Events past retention are unreachable."""

    durable = False

    def __init__(self, retention_seconds: float = DEFAULT_RETENTION_SECONDS) -> None:
        self.retention_seconds = retention_seconds
        self._events: list[WebhookEvent] = []
        self._lock = asyncio.Lock()

    async def store(self, event: WebhookEvent) -> None:
        async with self._lock:
            self._events.append(event)

    async def recent(self, limit: int = 50) -> list[WebhookEvent]:
        if limit <= 0:
            return []
        cutoff = time.time() - self.retention_seconds
        async with self._lock:
            live = [e for e in self._events if e.received_at >= cutoff]
        live.sort(key=lambda e: e.received_at, reverse=True)
        return live[:limit]

    async def purge_older_than(self, seconds: float) -> int:
        cutoff = time.time() - seconds
        async with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.received_at >= cutoff]
            removed = before - len(self._events)
        return removed

    async def count(self) -> int:
        return len(self._events)


class RedisEventStore:
    """Redis-backed store with per-event TTL and a time-ordered index."""

    durable = True

    def __init__(self, redis_client: Any, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        self._redis = redis_client
        self.retention_seconds = int(retention_seconds)

    async def store(self, event: WebhookEvent) -> None:
        """Write the event and its index entry atomically.

        Raises:
            StorageError: If Redis rejects the write or is unreachable.
        """
        key = event_key(event)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.setex(key, self.retention_seconds, event.to_json())
                pipe.zadd(INDEX_KEY, {key: event.received_at})
                await pipe.execute()
        except Exception as e:
            raise StorageError(
                f"Failed to store webhook event {event.topic}:{event.resource_id}",
                details={"error": type(e).__name__},
            ) from e
        logger.debug("Webhook event stored: %s (key=%s)", event.topic, key)

    async def recent(self, limit: int = 50) -> list[WebhookEvent]:
        """Newest-first events received within the retention window."""
        if limit <= 0:
            return []
        cutoff = time.time() - self.retention_seconds
        try:
            keys = await self._redis.zrevrangebyscore(INDEX_KEY, "+inf", cutoff, start=0, num=limit)
            if not keys:
                return []
            raw_values = await self._redis.mget(keys)
        except Exception as e:
            raise StorageError("Failed to read recent webhook events") from e

        events: list[WebhookEvent] = []
        expired: list[str] = []
        for key, raw in zip(keys, raw_values):
            if raw is None:
                expired.append(key)
                continue
            try:
                events.append(WebhookEvent.from_json(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("Failed to parse stored webhook event: %s", key)
        if expired:
            try:
                await self._redis.zrem(INDEX_KEY, *expired)
            except Exception:
                logger.warning("Failed to unindex %d expired events", len(expired), exc_info=True)
        return events

    async def purge_older_than(self, seconds: float) -> int:
        """Delete events received more than ``seconds`` ago. Returns count removed."""
        cutoff = time.time() - seconds
        try:
            keys = await self._redis.zrangebyscore(INDEX_KEY, "-inf", f"({cutoff}")
            if not keys:
                return 0
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(*keys)
                pipe.zrem(INDEX_KEY, *keys)
                await pipe.execute()
        except Exception as e:
            raise StorageError("Failed to purge webhook events") from e
        logger.info("Cleared old webhook events: deleted=%d older_than=%.0fs", len(keys), seconds)
        return len(keys)

    async def count(self) -> int:
        try:
            return int(await self._redis.zcard(INDEX_KEY))
        except Exception as e:
            raise StorageError("Failed to count webhook events") from e
