"""Exponential backoff with jitter for provider calls.

Retries on transient failures: connection errors, timeouts, HTTP 5xx and
HTTP 429. Respects Retry-After hints. Logs each retry attempt.

The delay computation is a pure function of the attempt number so it can be
tested without sleeping; ``RetryPolicy`` takes the sleep and random source
as injectable collaborators.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Generic, TypeVar

from commerce_gateway.errors import ErrorClass, GatewayError, ProviderError, RetryExhausted, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Floor so that a jittered delay never collapses to a hot loop
MIN_DELAY = 0.1


@dataclass
class RetryAttempt:
    """One failed attempt of a logical call."""

    attempt_number: int
    last_error: BaseException
    next_delay: float | None = None


@dataclass
class RetryOutcome(Generic[T]):
    """Successful result of a retried call plus its attempt history."""

    value: T
    attempts: int
    failures: list[RetryAttempt] = field(default_factory=list)


def backoff_range(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.3,
) -> tuple[float, float]:
    """Return the (low, high) delay window after failed attempt ``attempt``.

    ``attempt`` is zero-based: the window after the first failure is
    ``base * 2^0 ± jitter``. The centre is capped at ``max_delay`` and the
    high end never exceeds it.
    """
    centre = min(base_delay * (2**attempt), max_delay)
    spread = centre * jitter
    low = max(MIN_DELAY, centre - spread)
    high = min(max_delay, centre + spread)
    return min(low, high), high


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def compute_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.3,
    retry_after: str | None = None,
    rng: random.Random | None = None,
) -> float:
    """Compute delay with exponential backoff + jitter, respecting Retry-After."""
    hinted = parse_retry_after(retry_after)
    if hinted is not None:
        return min(hinted, max_delay)

    low, high = backoff_range(attempt, base_delay, max_delay, jitter)
    return (rng or random).uniform(low, high)


def is_retryable(exc: BaseException) -> bool:
    """Whether ``exc`` belongs to the transient whitelist."""
    if isinstance(exc, RetryExhausted):
        return False
    return classify(exc) is ErrorClass.TRANSIENT


class RetryPolicy:
    """Bounded retry of one logical call.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0). Adds randomness to prevent thundering herd.
        sleep: Async sleep, injectable for tests.
        rng: Random source, injectable for tests.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.3,
        *,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep or asyncio.sleep
        self._rng = rng

    def delay_for(self, attempt: int, error: BaseException) -> float:
        retry_after = error.retry_after if isinstance(error, ProviderError) else None
        return compute_delay(
            attempt,
            self.base_delay,
            self.max_delay,
            self.jitter,
            retry_after=retry_after,
            rng=self._rng,
        )

    async def execute(
        self,
        fn: Callable[[int], Awaitable[T]],
        *,
        label: str = "call",
    ) -> RetryOutcome[T]:
        """Run ``fn(attempt_number)`` until it succeeds or attempts run out.

        Non-whitelisted errors are re-raised immediately with ``attempts``
        set. Exhausting all attempts raises ``RetryExhausted`` wrapping the
        last error.
        """
        failures: list[RetryAttempt] = []
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await fn(attempt)
                return RetryOutcome(value=value, attempts=attempt, failures=failures)
            except Exception as e:
                if not is_retryable(e):
                    if isinstance(e, GatewayError):
                        e.attempts = attempt
                    raise
                record = RetryAttempt(attempt_number=attempt, last_error=e)
                failures.append(record)
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt - 1, e)
                record.next_delay = delay
                logger.warning(
                    "Retry %d/%d for %s (%s), waiting %.2fs",
                    attempt,
                    self.max_attempts - 1,
                    label,
                    _describe(e),
                    delay,
                )
                await self._sleep(delay)

        last = failures[-1].last_error
        logger.error("Retry exhausted for %s after %d attempts: %s", label, len(failures), _describe(last))
        raise RetryExhausted(last, attempts=len(failures))


def _describe(error: BaseException) -> str:
    if isinstance(error, ProviderError):
        return f"HTTP {error.status}"
    return type(error).__name__
