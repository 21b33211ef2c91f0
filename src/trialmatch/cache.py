"""Rate-limited response cache shared by all upstream clients.

ARCHITECTURE:
    Client request → RateLimitedCache.call(source, params, fn) → cache hit | rate-limit slot → fn() → cache store

Every outbound API call goes through one RateLimitedCache so that rate
classes and TTLs are enforced per source no matter how many pipeline runs
are in flight.

Key Design:
- Sliding-window limiter per source (N calls per rolling 1s window)
- One asyncio.Lock per source window, so a saturated source never blocks another
- Locks are held per event loop while window and cache state are shared, so
  hosts that call asyncio.run per request can reuse one instance
- Per-key locks coalesce concurrent misses into a single upstream call
- Cache keys are canonical JSON of all request parameters
- Failures are never cached
- Explicit lifecycle: get_default_cache() creates the shared instance on first
  use and set_default_cache() swaps it (tests inject their own)
"""

import asyncio
import json
import logging
import time
import weakref
from collections import Counter, deque
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterator, TypeVar

from trialmatch.config.settings import get_settings
from trialmatch.config.sources import SourceConfig, get_source_config

logger = logging.getLogger(__name__)

T = TypeVar("T")

CACHE_HITS_KEY = "cache_hits"

_run_counter: ContextVar[Counter | None] = ContextVar("trialmatch_api_calls", default=None)


@contextmanager
def track_api_calls() -> Iterator[Counter]:
    """Count upstream calls made inside the block, per source.

    Tasks spawned inside the block inherit the counter through the context,
    so concurrent lookups are attributed to the run that started them.
    """
    counter: Counter = Counter()
    token = _run_counter.set(counter)
    try:
        yield counter
    finally:
        _run_counter.reset(token)


def make_cache_key(source_key: str, params: dict[str, Any]) -> str:
    """Deterministic cache key for a request."""
    return f"{source_key}:{json.dumps(params, sort_keys=True, default=str)}"


@dataclass
class CallResult(Generic[T]):
    """Result of a cached call."""

    value: T
    hit: bool


@dataclass
class SourceMetrics:
    """Request counters and response times for one source."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cached_requests: int = 0
    total_response_ms: float = 0.0
    min_response_ms: float | None = None
    max_response_ms: float | None = None
    last_error: str | None = None

    @property
    def average_response_ms(self) -> float:
        timed = self.successful_requests + self.failed_requests
        return self.total_response_ms / timed if timed else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "cached_requests": self.cached_requests,
            "average_response_ms": round(self.average_response_ms, 2),
            "min_response_ms": self.min_response_ms,
            "max_response_ms": self.max_response_ms,
            "last_error": self.last_error,
        }


class APIMonitor:
    """Per-source API metrics."""

    def __init__(self) -> None:
        self._metrics: dict[str, SourceMetrics] = {}

    def record(
        self,
        source: str,
        duration_ms: float,
        success: bool,
        cached: bool = False,
        error: str | None = None,
    ) -> None:
        metrics = self._metrics.setdefault(source, SourceMetrics())
        metrics.total_requests += 1

        if cached:
            metrics.cached_requests += 1
            return

        if success:
            metrics.successful_requests += 1
        else:
            metrics.failed_requests += 1
            metrics.last_error = error

        metrics.total_response_ms += duration_ms
        if metrics.min_response_ms is None or duration_ms < metrics.min_response_ms:
            metrics.min_response_ms = duration_ms
        if metrics.max_response_ms is None or duration_ms > metrics.max_response_ms:
            metrics.max_response_ms = duration_ms

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {source: m.to_dict() for source, m in self._metrics.items()}

    def reset(self) -> None:
        self._metrics.clear()


class SlidingWindowRateLimiter:
    """At most ``limit`` acquisitions per rolling ``window`` seconds."""

    def __init__(
        self,
        limit: int,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = weakref.WeakKeyDictionary()

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()

    async def acquire(self) -> None:
        """Wait until a slot is free, then take it."""
        loop = asyncio.get_running_loop()
        lock = self._locks.get(loop)
        if lock is None:
            lock = self._locks[loop] = asyncio.Lock()

        async with lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._calls) < self.limit:
                    self._calls.append(now)
                    return
                wait = self.window - (now - self._calls[0])
                logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
                await self._sleep(max(wait, 0.0))

    @property
    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._calls)


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class RateLimitedCache:
    """Sliding-window rate limiter plus TTL cache keyed by request parameters.

    Args:
        sources: Optional source configuration overrides keyed by source name.
            Sources not listed are resolved through the bundled YAML config.
        enable_caching: When False every call goes upstream.
        enable_rate_limiting: When False no slot is acquired.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep used while waiting for a slot.
        monitor: APIMonitor receiving one record per call.
    """

    def __init__(
        self,
        sources: dict[str, SourceConfig] | None = None,
        enable_caching: bool = True,
        enable_rate_limiting: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monitor: APIMonitor | None = None,
    ):
        self.enable_caching = enable_caching
        self.enable_rate_limiting = enable_rate_limiting
        self.monitor = monitor or APIMonitor()
        self._sources = dict(sources or {})
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[str, _CacheEntry] = {}
        self._limiters: dict[str, SlidingWindowRateLimiter] = {}
        self._key_locks: dict[tuple[int, str], _KeyLock] = {}

    def source_config(self, source_key: str) -> SourceConfig:
        if source_key not in self._sources:
            self._sources[source_key] = get_source_config(source_key)
        return self._sources[source_key]

    def limiter_for(self, source_key: str) -> SlidingWindowRateLimiter:
        limiter = self._limiters.get(source_key)
        if limiter is None:
            config = self.source_config(source_key)
            limiter = SlidingWindowRateLimiter(
                config.requests_per_second, clock=self._clock, sleep=self._sleep
            )
            self._limiters[source_key] = limiter
        return limiter

    def _get_fresh(self, key: str) -> _CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def _execute(self, source_key: str, fn: Callable[[], Awaitable[T]]) -> T:
        if self.enable_rate_limiting:
            await self.limiter_for(source_key).acquire()

        counter = _run_counter.get()
        if counter is not None:
            counter[source_key] += 1

        start = time.perf_counter()
        try:
            value = await fn()
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self.monitor.record(source_key, duration_ms, success=False, error=str(e))
            raise
        duration_ms = (time.perf_counter() - start) * 1000
        self.monitor.record(source_key, duration_ms, success=True)
        return value

    async def call(
        self,
        source_key: str,
        params: dict[str, Any],
        fn: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> CallResult[T]:
        """Run ``fn`` under the source's rate limit unless a fresh entry exists.

        Args:
            source_key: Upstream source name (e.g. "clinicaltrials")
            params: Every parameter that affects the response
            fn: Zero-argument coroutine factory performing the request
            ttl: Override for the source's cache TTL in seconds

        Returns:
            CallResult with the value and whether it came from cache
        """
        if not self.enable_caching:
            return CallResult(await self._execute(source_key, fn), hit=False)

        key = make_cache_key(source_key, params)
        lock_key = (id(asyncio.get_running_loop()), key)
        key_lock = self._key_locks.setdefault(lock_key, _KeyLock())
        key_lock.waiters += 1
        try:
            async with key_lock.lock:
                entry = self._get_fresh(key)
                if entry is not None:
                    logger.debug(f"Cache hit for {source_key}")
                    self.monitor.record(source_key, 0.0, success=True, cached=True)
                    counter = _run_counter.get()
                    if counter is not None:
                        counter[CACHE_HITS_KEY] += 1
                    return CallResult(entry.value, hit=True)

                value = await self._execute(source_key, fn)
                expires_in = ttl if ttl is not None else self.source_config(source_key).cache_ttl
                self._entries[key] = _CacheEntry(value=value, expires_at=self._clock() + expires_in)
                return CallResult(value, hit=False)
        finally:
            key_lock.waiters -= 1
            if key_lock.waiters == 0:
                self._key_locks.pop(lock_key, None)

    def invalidate(self, source_key: str) -> int:
        """Drop all cached entries for one source."""
        prefix = f"{source_key}:"
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        fresh = sum(1 for entry in self._entries.values() if entry.expires_at > now)
        return {
            "entries": len(self._entries),
            "fresh_entries": fresh,
            "sources": sorted(self._limiters),
            "metrics": self.monitor.snapshot(),
        }


_default_cache: RateLimitedCache | None = None


def get_default_cache() -> RateLimitedCache:
    """Return the process-wide cache, creating it from settings on first use."""
    global _default_cache
    if _default_cache is None:
        settings = get_settings()
        _default_cache = RateLimitedCache(
            enable_caching=settings.enable_caching,
            enable_rate_limiting=settings.enable_rate_limiting,
        )
    return _default_cache


def set_default_cache(cache: RateLimitedCache | None) -> None:
    """Replace the process-wide cache. Passing None resets it."""
    global _default_cache
    _default_cache = cache
