"""
Fixed-window rate limiting.

A key's window opens on its first request and lasts ``period`` seconds. Up to
``limit`` requests are allowed per window; later requests are denied until the
first request observed at or after the window end opens a new one.

Counter updates are read-modify-write on the CounterStore. Concurrent
increments on the same key may under-count; the limiter is an approximation,
not a quota ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import TYPE_CHECKING, Protocol

from epcishub.core.clock import Clock, utc_now

if TYPE_CHECKING:
    from epcishub.core.config import RateLimitConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }


@dataclass
class Counter:
    count: int
    reset_at: datetime


class CounterStore(Protocol):
    async def get(self, key: str) -> Counter | None: ...

    async def set(self, key: str, counter: Counter) -> None: ...


class InMemoryCounterStore:
    """Process-local counters; expired entries are replaced on next use."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}

    async def get(self, key: str) -> Counter | None:
        return self._counters.get(key)

    async def set(self, key: str, counter: Counter) -> None:
        self._counters[key] = counter

    def __len__(self) -> int:
        return len(self._counters)


class FixedWindowRateLimiter:
    """
    Allow/deny decisions for one namespace.

    Example:
        >>> limiter = FixedWindowRateLimiter(limit=2, period=60)
        >>> (await limiter.limit("GET:/capture")).allowed
        True
    """

    def __init__(
        self,
        limit: int,
        period: float,
        store: CounterStore | None = None,
        clock: Clock = utc_now,
        name: str = "default",
    ):
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")

        self.limit_count = limit
        self.period = period
        self.store = store or InMemoryCounterStore()
        self.name = name
        self._clock = clock

    async def limit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        counter = await self.store.get(key)

        if counter is None or now >= counter.reset_at:
            await self.store.set(key, Counter(count=1, reset_at=now + timedelta(seconds=self.period)))
            return RateLimitDecision(
                allowed=True,
                limit=self.limit_count,
                remaining=self.limit_count - 1,
                reset_seconds=math.ceil(self.period),
            )

        reset_seconds = max(0, math.ceil((counter.reset_at - now).total_seconds()))
        count = counter.count + 1
        if count > self.limit_count:
            logger.warning(f"Rate limit exceeded in '{self.name}' for {key}")
            return RateLimitDecision(
                allowed=False, limit=self.limit_count, remaining=0, reset_seconds=reset_seconds
            )

        await self.store.set(key, Counter(count=count, reset_at=counter.reset_at))
        return RateLimitDecision(
            allowed=True,
            limit=self.limit_count,
            remaining=self.limit_count - count,
            reset_seconds=reset_seconds,
        )


def namespace_for_path(path: str) -> str | None:
    """Rate limit namespace for a request path, or None when unlimited."""
    if path == "/capture" or path.startswith("/capture/"):
        return "capture"
    if path == "/queries" or path.startswith("/queries/"):
        return "subscription" if "/subscriptions" in path else "query"
    return None


class RateLimiterRegistry:
    """Independent limiters keyed by namespace."""

    def __init__(self, limiters: dict[str, FixedWindowRateLimiter] | None = None):
        self._limiters = dict(limiters or {})

    @classmethod
    def from_config(cls, config: RateLimitConfig, clock: Clock = utc_now) -> RateLimiterRegistry:
        return cls(
            {
                name: FixedWindowRateLimiter(limit, period, clock=clock, name=name)
                for name, (limit, period) in config.namespaces().items()
            }
        )

    def get(self, namespace: str) -> FixedWindowRateLimiter | None:
        return self._limiters.get(namespace)

    async def check(self, method: str, path: str) -> RateLimitDecision | None:
        """Decision for a request, or None when its path is not rate limited."""
        namespace = namespace_for_path(path)
        if namespace is None:
            return None
        limiter = self._limiters.get(namespace)
        if limiter is None:
            return None
        return await limiter.limit(f"{method}:{path}")

    def __contains__(self, namespace: str) -> bool:
        return namespace in self._limiters
