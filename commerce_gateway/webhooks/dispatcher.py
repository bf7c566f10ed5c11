"""Webhook event dispatcher: publish/subscribe fan-out to in-process handlers.

Subscriptions are matched by topic pattern:

- ``"Order.updated"``  exact resource type and event type
- ``"Order.*"``        any event on the resource type
- ``"*"``              every event (auditing)

``notify()`` only enqueues; a background worker invokes the handlers after
the HTTP response has been produced. Delivery contract:

- At most once per received webhook call (handlers are never retried)
- A failing handler is logged and does not stop the other handlers
- The queue is bounded; when full the OLDEST queued event is dropped to
  make room and the drop is counted
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from commerce_gateway.webhooks.models import WebhookEvent

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent], Union[None, Awaitable[None]]]

WILDCARD = "*"


def _validate_pattern(pattern: str) -> str:
    if pattern == WILDCARD:
        return pattern
    resource, sep, event = pattern.partition(".")
    if not sep or not resource or not event or resource == WILDCARD:
        raise ValueError(f"Invalid subscription pattern: {pattern!r}")
    return pattern


@dataclass(frozen=True)
class Subscription:
    pattern: str
    handler: Handler
    name: str

    def matches(self, event: WebhookEvent) -> bool:
        if self.pattern == WILDCARD:
            return True
        resource, _, event_type = self.pattern.partition(".")
        if resource != event.resource_type:
            return False
        return event_type == WILDCARD or event_type == event.event_type


class SubscriptionRegistry:
    """Topic pattern -> handlers."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(self, pattern: str, handler: Handler, name: str | None = None) -> Subscription:
        """Register ``handler`` for events matching ``pattern``.

        Raises:
            ValueError: If the pattern is malformed or the name is taken.
        """
        _validate_pattern(pattern)
        name = name or f"{getattr(handler, '__name__', 'handler')}-{uuid.uuid4().hex[:6]}"
        if name in self._subscriptions:
            raise ValueError(f"Subscription already registered: {name}")
        sub = Subscription(pattern=pattern, handler=handler, name=name)
        self._subscriptions[name] = sub
        logger.info("Webhook subscriber registered: %s -> %s", pattern, name)
        return sub

    def unsubscribe(self, name: str) -> bool:
        removed = self._subscriptions.pop(name, None) is not None
        if removed:
            logger.info("Webhook subscriber removed: %s", name)
        return removed

    def match(self, event: WebhookEvent) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.matches(event)]

    def __len__(self) -> int:
        return len(self._subscriptions)


@dataclass
class DispatchStats:
    queued: int = 0
    delivered: int = 0
    handler_failures: int = 0
    dropped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "delivered": self.delivered,
            "handler_failures": self.handler_failures,
            "dropped": self.dropped,
        }


class Dispatcher:
    """Bounded-queue dispatcher with background workers.

    Args:
        registry: Subscriptions to match events against.
        queue_size: Maximum events waiting for delivery.
        workers: Number of worker tasks draining the queue.
    """

    def __init__(self, registry: SubscriptionRegistry, queue_size: int = 1000, workers: int = 1) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.registry = registry
        self.stats = DispatchStats()
        self._queue: asyncio.Queue[WebhookEvent] = asyncio.Queue(maxsize=queue_size)
        self._worker_count = max(1, workers)
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"webhook-dispatch-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Webhook dispatcher started (workers=%d, queue_size=%d)", self._worker_count, self._queue.maxsize)

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, optionally delivering what is already queued."""
        if drain and self.running:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Webhook dispatcher stopped (pending=%d)", self.pending)

    def notify(self, event: WebhookEvent) -> bool:
        """Queue ``event`` for delivery without blocking.

        Returns False when an older event had to be dropped to make room.
        """
        self.stats.queued += 1
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass
        # Drop oldest event to make room
        try:
            dropped = self._queue.get_nowait()
            self._queue.task_done()
        except asyncio.QueueEmpty:
            dropped = None
        if dropped is not None:
            self.stats.dropped += 1
            logger.warning(
                "Dispatch queue full, dropped oldest event %s:%s",
                dropped.topic,
                dropped.resource_id,
            )
        self._queue.put_nowait(event)
        return False

    async def deliver(self, event: WebhookEvent) -> int:
        """Invoke every matching handler once. Returns the number that succeeded."""
        succeeded = 0
        for sub in self.registry.match(event):
            try:
                result: Any = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.stats.handler_failures += 1
                logger.exception(
                    "Webhook handler %s failed for %s:%s",
                    sub.name,
                    event.topic,
                    event.resource_id,
                )
                continue
            succeeded += 1
            self.stats.delivered += 1
        return succeeded

    async def _worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            finally:
                self._queue.task_done()
