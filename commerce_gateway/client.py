"""Resilient REST client for commerce providers.

The only entry point business handlers use for outbound calls. One instance
per provider composes:

- ResponseCache: idempotent calls are served from cache within the TTL
- RateLimiter: every attempt (retries included) waits for a provider token
- RetryPolicy: transient failures are retried with backoff

Idempotent call:  cache lookup -> (miss) rate-limited retrying call -> cache store
Mutating call:    rate-limited retrying call -> invalidate resource prefix

Every call emits one OUTBOUND_CALL log record with duration, attempt count
and cache state.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx

from commerce_gateway.config import ProviderSettings
from commerce_gateway.errors import GatewayError, ProviderError, TerminalError
from commerce_gateway.providers import ProviderProfile, get_profile
from commerce_gateway.resilience.cache import MISS, ResponseCache, cache_key, normalize_path
from commerce_gateway.resilience.rate_limit import RateLimiter
from commerce_gateway.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Calls slower than this are flagged in the logs
SLOW_CALL_SECONDS = 2.0


@dataclass
class OutboundRequest:
    """One logical outbound call.

    ``idempotent`` defaults to True for GET/HEAD/OPTIONS and decides cache
    eligibility. ``use_cache=False`` bypasses the cache for an idempotent
    call without invalidating anything.
    """

    method: str
    path: str
    params: dict[str, Any] | None = None
    body: Any = None
    idempotent: bool | None = None
    use_cache: bool = True
    max_wait: float | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if self.idempotent is None:
            self.idempotent = self.method in IDEMPOTENT_METHODS


@dataclass
class ProviderResponse:
    """Decoded provider response."""

    status: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)
    from_cache: bool = False
    attempts: int = 0


@dataclass
class ClientStats:
    requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    errors: int = 0
    rate_limit_hits: int = 0

    def as_dict(self) -> dict[str, Any]:
        looked_up = self.cache_hits + self.cache_misses
        hit_rate = self.cache_hits / looked_up * 100 if looked_up else 0.0
        error_rate = self.errors / self.requests * 100 if self.requests else 0.0
        return {
            "requests": self.requests,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "errors": self.errors,
            "rate_limit_hits": self.rate_limit_hits,
            "hit_rate": round(hit_rate, 2),
            "error_rate": round(error_rate, 2),
        }


def _extract_error_message(data: Any, default: str) -> tuple[str, str | None]:
    """Pull (message, provider code) out of a provider error body."""
    if not isinstance(data, dict):
        return default, None
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or default), error.get("code")
    if isinstance(error, str) and error:
        return error, None
    if data.get("message"):
        return str(data["message"]), None
    errors = data.get("errors")
    if isinstance(errors, list) and errors:
        return ", ".join(str(e) for e in errors), None
    return default, None


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class ResilientClient:
    """Rate-limited, retrying, caching REST client for one provider.

    Args:
        settings: Provider connection settings (base URL, API key, cache TTL).
        limiter: Shared rate limiter holding this provider's bucket.
        cache: Response cache for idempotent calls.
        retry_policy: Retry policy applied to each logical call.
        timeout: Per-attempt timeout in seconds.
        http_client: Optional pre-built ``httpx.AsyncClient`` (tests inject a
            MockTransport-backed client here).
        profile: Provider profile; looked up by ``settings.name`` if omitted.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        limiter: RateLimiter,
        cache: ResponseCache,
        retry_policy: RetryPolicy,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        profile: ProviderProfile | None = None,
    ) -> None:
        self.provider = settings.name
        self.profile = profile or get_profile(settings.name)
        self.cache = cache
        self.cache_ttl = settings.cache_ttl
        self.timeout = timeout
        self.stats = ClientStats()
        self._limiter = limiter
        self._retry = retry_policy
        self._base_url = settings.base_url.rstrip("/")
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.profile.user_agent,
        }
        if settings.api_key:
            self._headers.update(self.profile.auth_headers(settings.api_key))
        else:
            logger.warning("%s API key not set, outbound calls will be unauthenticated", self.provider)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

        logger.info(
            "%s client initialized: base_url=%s timeout=%.1fs max_attempts=%d cache_ttl=%ds",
            self.provider,
            self._base_url,
            timeout,
            retry_policy.max_attempts,
            self.cache_ttl,
        )

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public call surface
    # ------------------------------------------------------------------

    async def call(self, request: OutboundRequest) -> ProviderResponse:
        """Execute one logical call through cache, rate limiter and retry.

        Raises:
            ProviderError: Terminal provider rejection (4xx other than 429).
            RetryExhausted: Transient failures outlasted all attempts.
            RateLimitTimeout: The request's ``max_wait`` elapsed while queued.
            TerminalError: Any unexpected exception, converted at this boundary.
        """
        self.stats.requests += 1
        start = time.perf_counter()
        path = normalize_path(request.path)
        cache_state = "bypass"
        attempts = 0
        status: int | None = None
        failed = False
        use_cache = bool(request.idempotent and request.use_cache)
        key = ""
        generation = 0

        try:
            if use_cache:
                key = cache_key(self.provider, request.method, path, request.params, request.body)
                generation = self.cache.generation(key)
                cached = await self.cache.get(key)
                if cached is not MISS:
                    cache_state = "hit"
                    self.stats.cache_hits += 1
                    status = cached["status"]
                    return ProviderResponse(status=status, data=cached["data"], from_cache=True)
                cache_state = "miss"
                self.stats.cache_misses += 1

            outcome = await self._retry.execute(
                lambda attempt: self._attempt(request, path, attempt),
                label=f"{self.provider} {request.method} {path}",
            )
            response = outcome.value
            response.attempts = attempts = outcome.attempts
            status = response.status

            if use_cache:
                await self.cache.set(
                    key,
                    {"status": response.status, "data": response.data},
                    ttl=self.cache_ttl,
                    generation=generation,
                )
            return response

        except GatewayError as e:
            failed = True
            self.stats.errors += 1
            attempts = e.attempts or attempts
            status = getattr(e, "status", None)
            raise
        except Exception as e:
            failed = True
            self.stats.errors += 1
            logger.exception("Unexpected error calling %s %s %s", self.provider, request.method, path)
            raise TerminalError(
                f"Unexpected error calling {self.provider}: {type(e).__name__}",
                details={"provider": self.provider, "path": path},
            ) from e
        finally:
            # A failed mutation may still have been applied upstream
            if not request.idempotent:
                await self.cache.invalidate_resource(self.provider, path)
            self._log_call(request.method, path, status, attempts, cache_state, start, failed)

    async def get(self, path: str, params: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        return (await self.call(OutboundRequest("GET", path, params=params, **kwargs))).data

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return (await self.call(OutboundRequest("POST", path, body=body, **kwargs))).data

    async def put(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return (await self.call(OutboundRequest("PUT", path, body=body, **kwargs))).data

    async def patch(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return (await self.call(OutboundRequest("PATCH", path, body=body, **kwargs))).data

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return (await self.call(OutboundRequest("DELETE", path, **kwargs))).data

    async def health_check(self) -> dict[str, Any]:
        """Probe the provider's health path (cache bypassed)."""
        start = time.perf_counter()
        errors: list[str] = []
        try:
            await self.call(OutboundRequest("GET", self.profile.health_path, use_cache=False))
        except GatewayError as e:
            errors.append(str(e))
        latency_ms = (time.perf_counter() - start) * 1000
        healthy = not errors and latency_ms < 5000
        return {
            "status": "healthy" if healthy else "unhealthy",
            "latency_ms": round(latency_ms, 1),
            "errors": errors,
        }

    async def clear_cache(self, resource: str | None = None) -> int:
        """Drop cached responses for this provider (optionally one resource)."""
        if resource:
            return await self.cache.invalidate_resource(self.provider, resource)
        return await self.cache.clear(self.provider)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
        logger.info("%s client closed", self.provider)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _attempt(self, request: OutboundRequest, path: str, attempt: int) -> ProviderResponse:
        """One HTTP attempt. Retries re-enter here and re-acquire a token."""
        await self._limiter.acquire(self.provider, max_wait=request.max_wait)

        request_id = f"req_{uuid.uuid4().hex[:12]}"
        response = await self._http.request(
            request.method,
            f"{self._base_url}{path}",
            params=request.params,
            json=request.body if request.body is not None else None,
            headers={**self._headers, "X-Request-ID": request_id},
            timeout=request.timeout or self.timeout,
        )
        logger.debug(
            "%s API %s %s -> %d (attempt=%d request_id=%s)",
            self.provider,
            request.method,
            path,
            response.status_code,
            attempt,
            request_id,
        )
        if response.status_code >= 400:
            raise self._error_from_response(response)
        return ProviderResponse(
            status=response.status_code,
            data=_decode_body(response),
            headers=dict(response.headers),
        )

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        data = _decode_body(response)
        message, provider_code = _extract_error_message(data, "API request failed")
        if status == 429:
            self.stats.rate_limit_hits += 1
            logger.warning("%s rate limit exceeded (Retry-After=%s)", self.provider, response.headers.get("Retry-After"))
        return ProviderError(
            message,
            status=status,
            details={"response": data, "provider_code": provider_code},
            retry_after=response.headers.get("Retry-After"),
        )

    def _log_call(
        self,
        method: str,
        path: str,
        status: int | None,
        attempts: int,
        cache_state: str,
        start: float,
        failed: bool,
    ) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        fields = {
            "provider": self.provider,
            "method": method,
            "path": path,
            "status": status,
            "attempts": attempts,
            "cache": cache_state,
            "duration_ms": round(duration_ms, 1),
        }
        logger.log(
            logging.WARNING if failed else logging.INFO,
            "OUTBOUND_CALL provider=%s method=%s path=%s status=%s attempts=%d cache=%s duration_ms=%.1f",
            self.provider,
            method,
            path,
            status,
            attempts,
            cache_state,
            duration_ms,
            extra={"outbound_call": fields},
        )
        if duration_ms > SLOW_CALL_SECONDS * 1000:
            logger.warning("Slow %s call: %s %s took %.0fms", self.provider, method, path, duration_ms)
