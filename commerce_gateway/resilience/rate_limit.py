"""Token-bucket rate limiting for outbound provider calls.

One ``TokenBucket`` per provider, owned by a ``RateLimiter`` that the
composition root constructs at startup and hands to every client.

Grants are spaced at least ``1 / refill_rate`` seconds apart, so no
one-second window sees more than ``refill_rate + 1`` requests. Capacity is
a reservoir on top of that spacing, not a burst allowance.

Waiters are served in arrival order. The head-of-line waiter holds the
bucket lock while it sleeps until the next grant is due, so later callers
queue behind it on the lock (asyncio.Lock wakes waiters FIFO) instead of
polling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from commerce_gateway.errors import ConfigurationError, RateLimitTimeout

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

# Float residue tolerance for token counts and due times
_EPSILON = 1e-9


@dataclass(frozen=True)
class Permit:
    """Proof that one request may be sent to a provider."""

    provider: str
    granted_at: float
    waited: float


class TokenBucket:
    """Async token bucket with time-based refill.

    Args:
        name: Provider id (used in errors and logs).
        capacity: Maximum tokens held (reservoir size).
        refill_rate: Tokens added per second, also the maximum grant rate.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        capacity: int,
        refill_rate: float,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.name = name
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._tokens = float(capacity)
        self._last_refill = self._clock()
        self.min_interval = 1.0 / refill_rate
        self._next_grant_at = self._last_refill
        self._lock = asyncio.Lock()
        self._waiters = 0
        self.granted = 0
        self.timeouts = 0

    @property
    def available_tokens(self) -> float:
        """Tokens available right now (read-only, does not advance state)."""
        elapsed = max(0.0, self._clock() - self._last_refill)
        return min(float(self.capacity), self._tokens + elapsed * self.refill_rate)

    @property
    def waiters(self) -> int:
        return self._waiters

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    async def _take(self, deadline: float | None, max_wait: float | None) -> None:
        async with self._lock:
            while True:
                self._refill()
                now = self._clock()
                wait = self._next_grant_at - now
                if self._tokens < 1.0 - _EPSILON:
                    wait = max(wait, (1.0 - self._tokens) / self.refill_rate)
                if wait <= _EPSILON:
                    self._tokens = max(0.0, self._tokens - 1.0)
                    self._next_grant_at = now + self.min_interval
                    return
                # Fail fast when the next grant is due after the caller's deadline
                if deadline is not None and now + wait > deadline:
                    raise RateLimitTimeout(self.name, max_wait or 0.0)
                await self._sleep(wait)

    async def acquire(self, max_wait: float | None = None) -> Permit:
        """Wait for one token and return a permit.

        Args:
            max_wait: Maximum seconds to wait. ``None`` waits indefinitely.

        Raises:
            RateLimitTimeout: If no token could be granted within ``max_wait``.
        """
        start = self._clock()
        deadline = None if max_wait is None else start + max_wait
        self._waiters += 1
        try:
            if max_wait is None:
                await self._take(None, None)
            elif max_wait <= 0:
                # wait_for(timeout=0) cancels before the first step on 3.10/3.11
                if self._lock.locked():
                    raise RateLimitTimeout(self.name, max_wait)
                await self._take(deadline, max_wait)
            else:
                try:
                    await asyncio.wait_for(self._take(deadline, max_wait), timeout=max_wait)
                except asyncio.TimeoutError:
                    raise RateLimitTimeout(self.name, max_wait) from None
        except RateLimitTimeout:
            self.timeouts += 1
            logger.warning("Rate limit wait exceeded for %s (max_wait=%.2fs)", self.name, max_wait)
            raise
        finally:
            self._waiters -= 1

        waited = self._clock() - start
        self.granted += 1
        if waited > 0:
            logger.debug("Rate limit permit for %s after %.3fs", self.name, waited)
        return Permit(provider=self.name, granted_at=self._clock(), waited=waited)

    def snapshot(self) -> dict[str, Any]:
        return {
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "available_tokens": round(self.available_tokens, 3),
            "waiters": self._waiters,
            "granted": self.granted,
            "timeouts": self.timeouts,
        }


class RateLimiter:
    """Per-provider registry of token buckets."""

    def __init__(self, buckets: dict[str, TokenBucket] | None = None) -> None:
        self._buckets: dict[str, TokenBucket] = dict(buckets or {})

    def add_provider(
        self,
        provider_id: str,
        capacity: int,
        refill_rate: float,
        **kwargs: Any,
    ) -> TokenBucket:
        """Create (or replace) the bucket for a provider."""
        bucket = TokenBucket(provider_id, capacity, refill_rate, **kwargs)
        self._buckets[provider_id] = bucket
        logger.info(
            "Rate limit bucket for %s: capacity=%d refill=%.2f/s",
            provider_id,
            capacity,
            refill_rate,
        )
        return bucket

    def bucket(self, provider_id: str) -> TokenBucket:
        try:
            return self._buckets[provider_id]
        except KeyError:
            raise ConfigurationError(f"No rate limit bucket configured for {provider_id}") from None

    async def acquire(self, provider_id: str, max_wait: float | None = None) -> Permit:
        """Block until ``provider_id`` may send one request."""
        return await self.bucket(provider_id).acquire(max_wait=max_wait)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Current occupancy of every bucket (for the health endpoint)."""
        return {name: bucket.snapshot() for name, bucket in self._buckets.items()}
