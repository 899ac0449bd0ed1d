import pytest

from epcishub.core.config import RateLimitConfig
from epcishub.ratelimit.limiter import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimiterRegistry,
    namespace_for_path,
)


class TestFixedWindow:
    """Allow/deny decisions within and across windows."""

    async def test_allows_up_to_limit_then_denies(self, clock):
        limiter = FixedWindowRateLimiter(limit=3, period=60, clock=clock)

        remaining = [(await limiter.limit("k")).remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        denied = await limiter.limit("k")
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.reset_seconds == 60

    async def test_window_resets_after_denials(self, clock):
        limiter = FixedWindowRateLimiter(limit=1, period=60, clock=clock)
        await limiter.limit("k")
        for _ in range(5):
            await limiter.limit("k")
        clock.advance(60)
        assert (await limiter.limit("k")).remaining == 0

    async def test_new_window_after_reset(self, clock):
        limiter = FixedWindowRateLimiter(limit=2, period=60, clock=clock)
        await limiter.limit("k")
        await limiter.limit("k")
        clock.advance(30)
        assert not (await limiter.limit("k")).allowed
        assert (await limiter.limit("k")).reset_seconds == 30

        clock.advance(30)
        decision = await limiter.limit("k")
        assert decision.allowed
        assert decision.remaining == 1
        assert decision.reset_seconds == 60

    async def test_keys_are_independent(self, clock):
        limiter = FixedWindowRateLimiter(limit=1, period=60, clock=clock)
        assert (await limiter.limit("GET:/capture")).allowed
        assert (await limiter.limit("POST:/capture")).allowed
        assert not (await limiter.limit("GET:/capture")).allowed

    def test_headers(self):
        limiter_headers = {
            "RateLimit-Limit": "5",
            "RateLimit-Remaining": "4",
            "RateLimit-Reset": "60",
        }
        assert RateLimitDecision(True, 5, 4, 60).headers() == limiter_headers

    @pytest.mark.parametrize(("limit", "period"), [(0, 60), (5, 0)])
    def test_invalid_settings(self, limit, period):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(limit=limit, period=period)


class TestNamespaces:
    @pytest.mark.parametrize(
        ("path", "namespace"),
        [
            ("/capture", "capture"),
            ("/capture/abc", "capture"),
            ("/queries", "query"),
            ("/queries/shipped/events", "query"),
            ("/queries/shipped/subscriptions", "subscription"),
            ("/queries/shipped/subscriptions/1", "subscription"),
            ("/events", None),
            ("/", None),
            ("/captures", None),
        ],
    )
    def test_namespace_for_path(self, path, namespace):
        assert namespace_for_path(path) == namespace

    async def test_registry_keeps_namespaces_apart(self, clock):
        config = RateLimitConfig(capture_limit=1, query_limit=1, subscription_limit=1)
        registry = RateLimiterRegistry.from_config(config, clock=clock)

        assert (await registry.check("GET", "/queries")).allowed
        assert (await registry.check("GET", "/capture")).allowed
        assert not (await registry.check("GET", "/queries")).allowed
        assert await registry.check("GET", "/health") is None
        assert "subscription" in registry

    async def test_unconfigured_namespace_is_unlimited(self):
        assert await RateLimiterRegistry().check("POST", "/capture") is None
