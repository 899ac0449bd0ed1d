"""Fixed-window rate limiting per namespace."""

from epcishub.ratelimit.limiter import (
    FixedWindowRateLimiter,
    InMemoryCounterStore,
    RateLimitDecision,
    RateLimiterRegistry,
    namespace_for_path,
)

__all__ = [
    "FixedWindowRateLimiter",
    "InMemoryCounterStore",
    "RateLimitDecision",
    "RateLimiterRegistry",
    "namespace_for_path",
]
