"""Fixed window rate limiting with interchangeable memory and Supabase counters."""

import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Mapping, Optional
from saleingest.models.guards import RateLimitCounter, RateLimitResult
from saleingest.services import supabase_client
from saleingest.utils.errors import SupabaseError
from saleingest.utils.http import get_header
from saleingest.utils.logging import get_structured_logger, mask_identifier

logger = get_structured_logger(__name__)

# API-wide default: 100 requests per 15 minutes
API_WINDOW_MS = 15 * 60 * 1000
API_MAX_REQUESTS = 100


class RateLimitStore(ABC):
    """Counter backend; both implementations share reset-at-window-end semantics."""

    @abstractmethod
    async def increment(self, key: str, window_ms: int, now: float) -> RateLimitCounter:
        """Count one request, opening a new window when the previous one closed."""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local counters for single-instance deployments and tests."""

    def __init__(self):
        self._counters: dict[str, RateLimitCounter] = {}
        self._lock = threading.Lock()

    async def increment(self, key: str, window_ms: int, now: float) -> RateLimitCounter:
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or now >= counter.window_reset_at:
                counter = RateLimitCounter(key=key, count=1, window_reset_at=now + window_ms / 1000)
            else:
                counter = counter.model_copy(update={"count": counter.count + 1})
            self._counters[key] = counter
            return counter

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


class SupabaseRateLimitStore(RateLimitStore):
    """Shared counters via the increment_rate_limit database function."""

    async def increment(self, key: str, window_ms: int, now: float) -> RateLimitCounter:
        row = await supabase_client.increment_rate_limit(key, window_ms, now)
        return RateLimitCounter(
            key=key,
            count=int(row["count"]),
            window_reset_at=float(row["window_reset_at"]),
        )


def default_rate_limit_key(headers: Optional[Mapping[str, str]]) -> str:
    """Caller identity from the first X-Forwarded-For hop."""
    forwarded = get_header(headers, "x-forwarded-for") or ""
    client_ip = forwarded.split(",")[0].strip() or "unknown"
    return f"rate_limit:{client_ip}"


class RateLimiter:
    """Fixed window limiter; the contract is identical for every store."""

    def __init__(
        self,
        window_ms: int = API_WINDOW_MS,
        max_requests: int = API_MAX_REQUESTS,
        store: Optional[RateLimitStore] = None,
    ):
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.store = store or InMemoryRateLimitStore()

    async def check_limit(self, key: str) -> RateLimitResult:
        """
        Count a request for ``key`` and report whether it is allowed.

        A failing shared store lets the request through and logs the failure.
        """
        now = time.time()
        try:
            counter = await self.store.increment(key, self.window_ms, now)
        except SupabaseError as e:
            logger.error(
                "Rate limit store unavailable, allowing request",
                rate_limit_key=mask_identifier(key),
                error=str(e),
            )
            return RateLimitResult(
                success=True,
                limit=self.max_requests,
                remaining=self.max_requests,
                reset_time=now + self.window_ms / 1000,
            )

        success = counter.count <= self.max_requests
        result = RateLimitResult(
            success=success,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - counter.count),
            reset_time=counter.window_reset_at,
            retry_after=None if success else max(1, math.ceil(counter.window_reset_at - now)),
        )
        if not success:
            logger.warning(
                "Rate limit exceeded",
                rate_limit_key=mask_identifier(key),
                request_count=counter.count,
                limit=self.max_requests,
                retry_after=result.retry_after,
            )
        return result


_memory_store = InMemoryRateLimitStore()


def get_rate_limit_store(backend: str) -> RateLimitStore:
    if backend == "supabase":
        return SupabaseRateLimitStore()
    return _memory_store


def create_rate_limiter(settings) -> RateLimiter:
    """Ingest limiter using the configured window, threshold and backend."""
    return RateLimiter(
        window_ms=settings.rate_limit_window_ms,
        max_requests=settings.rate_limit_max_requests,
        store=get_rate_limit_store(settings.rate_limit_backend),
    )


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """X-RateLimit-* headers, plus Retry-After when the request was rejected."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time)),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def create_api_rate_limiter(settings) -> RateLimiter:
    """API-wide limiter (100 requests per 15 minutes) on the configured backend."""
    return RateLimiter(
        window_ms=API_WINDOW_MS,
        max_requests=API_MAX_REQUESTS,
        store=get_rate_limit_store(settings.rate_limit_backend),
    )
