# tests/services/test_rate_limiter.py
"""Tests for sliding-window quotas and the named rate profiles."""

import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tracking_gate.services.rate_limiter import (
    RateLimiter,
    RateLimiterFactory,
    RateLimitProfile,
    RateLimitResult,
    RateProfileName,
    default_profiles,
)
from tracking_gate.services.stores import InMemorySlidingWindowStore

from conftest import make_settings

NOW = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class UnreachableWindowStore:
    async def hit(self, key, now_ms, window_ms):
        raise RedisConnectionError("connection refused")

    async def count(self, key, now_ms, window_ms):
        raise RedisConnectionError("connection refused")

    async def reset(self, key):
        raise RedisConnectionError("connection refused")


def _limiter(max_requests=3, window_ms=1_000, clock=None, store=None):
    profile = RateLimitProfile(
        "api", window_ms, max_requests, default_profiles()[RateProfileName.API].key_fn
    )
    return RateLimiter(
        store or InMemorySlidingWindowStore(), profile, clock=clock or FakeClock()
    )


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_n_requests_are_allowed(self):
        """Exactly `max_requests` requests fit in one window."""
        limiter = _limiter(max_requests=3)
        results = [await limiter.check_limit("1.2.3.4", "site_1") for _ in range(4)]

        assert [result.allowed for result in results] == [True, True, True, False]
        assert [result.remaining for result in results] == [2, 1, 0, 0]
        assert [result.total_hits for result in results] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_window_elapses(self):
        clock = FakeClock()
        limiter = _limiter(max_requests=1, window_ms=1_000, clock=clock)
        assert (await limiter.check_limit("1.2.3.4")).allowed is True
        assert (await limiter.check_limit("1.2.3.4")).allowed is False

        clock.now += 1_001
        assert (await limiter.check_limit("1.2.3.4")).allowed is True

    @pytest.mark.asyncio
    async def test_reset_at_is_one_window_ahead(self):
        limiter = _limiter(window_ms=1_000)
        result = await limiter.check_limit("1.2.3.4")
        assert result.reset_at == NOW + 1_000
        assert result.limit == 3

    @pytest.mark.asyncio
    async def test_sites_and_clients_have_separate_counters(self):
        limiter = _limiter(max_requests=1)
        assert (await limiter.check_limit("1.2.3.4", "site_1")).allowed is True
        assert (await limiter.check_limit("1.2.3.4", "site_2")).allowed is True
        assert (await limiter.check_limit("5.6.7.8", "site_1")).allowed is True
        assert (await limiter.check_limit("1.2.3.4", "site_1")).allowed is False

    @pytest.mark.asyncio
    async def test_get_status_does_not_record(self):
        limiter = _limiter(max_requests=3)
        await limiter.check_limit("1.2.3.4")
        status = await limiter.get_status("1.2.3.4")
        again = await limiter.get_status("1.2.3.4")

        assert status.total_hits == again.total_hits == 1
        assert status.remaining == 2

    @pytest.mark.asyncio
    async def test_reset_limit_clears_the_window(self):
        limiter = _limiter(max_requests=1)
        await limiter.check_limit("1.2.3.4")
        await limiter.reset_limit("1.2.3.4")
        assert (await limiter.check_limit("1.2.3.4")).allowed is True

    @pytest.mark.asyncio
    async def test_unreachable_store_fails_open(self, caplog):
        """Quota checks degrade to allow when the counter store is down."""
        limiter = _limiter(store=UnreachableWindowStore())
        with caplog.at_level(logging.WARNING, logger="tracking_gate.services.rate_limiter"):
            result = await limiter.check_limit("1.2.3.4", "site_1")

        assert result.allowed is True
        assert result.degraded is True
        assert "allowing request" in caplog.text


class TestRateLimitResult:
    def test_headers(self):
        result = RateLimitResult(
            allowed=True, remaining=4, reset_at=1_700_000_060_500, total_hits=1, limit=5
        )
        assert result.headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "4",
            "X-RateLimit-Reset": "1700000061",
        }

    def test_retry_after_rounds_up(self):
        result = RateLimitResult(
            allowed=False, remaining=0, reset_at=NOW + 1_500, total_hits=6, limit=5
        )
        assert result.retry_after_seconds(NOW) == 2
        assert result.retry_after_seconds(NOW + 5_000) == 0


class TestProfiles:
    def test_default_thresholds(self):
        profiles = default_profiles()
        assert (profiles[RateProfileName.API].window_ms, profiles[RateProfileName.API].max_requests) == (60_000, 100)
        assert profiles[RateProfileName.TRACKING].max_requests == 1000
        assert (profiles[RateProfileName.AUTH].window_ms, profiles[RateProfileName.AUTH].max_requests) == (900_000, 5)
        assert profiles[RateProfileName.WEBHOOK].max_requests == 100

    def test_api_profile_follows_settings(self):
        settings = make_settings(rate_limit_window_ms=5_000, rate_limit_max_requests=7)
        profile = default_profiles(settings)[RateProfileName.API]
        assert (profile.window_ms, profile.max_requests) == (5_000, 7)

    def test_key_formats(self):
        profiles = default_profiles()
        assert profiles[RateProfileName.API].key_fn("1.2.3.4", "site_1") == "rate_limit:site:site_1:ip:1.2.3.4"
        assert profiles[RateProfileName.API].key_fn("1.2.3.4", None) == "rate_limit:ip:1.2.3.4"
        assert profiles[RateProfileName.AUTH].key_fn("1.2.3.4", "site_1") == "rate_limit:auth:1.2.3.4"

    @pytest.mark.asyncio
    async def test_profiles_do_not_share_counters(self):
        factory = RateLimiterFactory(InMemorySlidingWindowStore(), clock=FakeClock())
        auth = factory.for_profile(RateProfileName.AUTH)
        for _ in range(5):
            await auth.check_limit("1.2.3.4")

        assert (await auth.check_limit("1.2.3.4")).allowed is False
        assert (await factory.for_profile(RateProfileName.API).check_limit("1.2.3.4")).allowed is True

    def test_factory_caches_limiters(self):
        factory = RateLimiterFactory(InMemorySlidingWindowStore())
        assert factory.for_profile(RateProfileName.API) is factory.for_profile(RateProfileName.API)
