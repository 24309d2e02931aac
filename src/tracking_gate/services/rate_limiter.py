"""Sliding-window rate limiting keyed by client and site."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from tracking_gate.core.errors import StoreUnavailable
from tracking_gate.core.settings import Settings
from tracking_gate.services.integrity import now_ms
from tracking_gate.services.stores import SlidingWindowStore, bounded

logger = logging.getLogger(__name__)

KeyFn = Callable[[str, str | None], str]


class RateProfileName(str, Enum):
    """Route classes with independent quotas."""

    API = "api"
    TRACKING = "tracking"
    AUTH = "auth"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class RateLimitProfile:
    name: str
    window_ms: int
    max_requests: int
    key_fn: KeyFn


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one quota check.

    `total_hits` counts the request being checked. `degraded` is set when the
    counter store could not be consulted and the request was let through.
    """

    allowed: bool
    remaining: int
    reset_at: int
    total_hits: int
    limit: int
    degraded: bool = False

    def retry_after_seconds(self, now: int) -> int:
        return max(0, math.ceil((self.reset_at - now) / 1000))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at / 1000)),
        }


def _api_key(ip: str, site_id: str | None) -> str:
    return f"rate_limit:site:{site_id}:ip:{ip}" if site_id else f"rate_limit:ip:{ip}"


def _tracking_key(ip: str, site_id: str | None) -> str:
    return f"rate_limit:tracking:{site_id}:{ip}" if site_id else f"rate_limit:tracking:{ip}"


def _auth_key(ip: str, site_id: str | None) -> str:
    # Brute-force protection is per client regardless of the claimed site.
    return f"rate_limit:auth:{ip}"


def _webhook_key(ip: str, site_id: str | None) -> str:
    return f"rate_limit:webhook:{site_id}:{ip}" if site_id else f"rate_limit:webhook:{ip}"


def default_profiles(settings: Settings | None = None) -> dict[RateProfileName, RateLimitProfile]:
    """Return the four named profiles; the general API profile follows settings."""
    api_window = settings.rate_limit_window_ms if settings else 60_000
    api_max = settings.rate_limit_max_requests if settings else 100
    return {
        RateProfileName.API: RateLimitProfile("api", api_window, api_max, _api_key),
        RateProfileName.TRACKING: RateLimitProfile("tracking", 60_000, 1000, _tracking_key),
        RateProfileName.AUTH: RateLimitProfile("auth", 900_000, 5, _auth_key),
        RateProfileName.WEBHOOK: RateLimitProfile("webhook", 60_000, 100, _webhook_key),
    }


class RateLimiter:
    """Enforce one profile's quota against a shared window store.

    Rate limiting is a soft protection: when the store is unreachable the
    request is admitted and the degradation logged.
    """

    def __init__(
        self,
        store: SlidingWindowStore,
        profile: RateLimitProfile,
        *,
        store_timeout: float = 0.5,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self.profile = profile
        self._store_timeout = store_timeout
        self._clock = clock

    def key_for(self, identity: str, site_id: str | None = None) -> str:
        return self.profile.key_fn(identity, site_id)

    async def check_limit(self, identity: str, site_id: str | None = None) -> RateLimitResult:
        """Record one request and report whether it fits the quota."""
        now = self._clock()
        key = self.key_for(identity, site_id)
        try:
            count = await bounded(
                self._store.hit(key, now, self.profile.window_ms),
                self._store_timeout,
                "rate limit check",
            )
        except StoreUnavailable as err:
            logger.warning(
                "Rate limit check failed for %s, allowing request: %s", key, err.reason
            )
            return RateLimitResult(
                allowed=True,
                remaining=self.profile.max_requests,
                reset_at=now + self.profile.window_ms,
                total_hits=0,
                limit=self.profile.max_requests,
                degraded=True,
            )
        return self._result(count, now)

    async def get_status(self, identity: str, site_id: str | None = None) -> RateLimitResult:
        """Report the current window without recording a request."""
        now = self._clock()
        count = await bounded(
            self._store.count(self.key_for(identity, site_id), now, self.profile.window_ms),
            self._store_timeout,
            "rate limit status",
        )
        return self._result(count, now)

    async def reset_limit(self, identity: str, site_id: str | None = None) -> None:
        await bounded(
            self._store.reset(self.key_for(identity, site_id)),
            self._store_timeout,
            "rate limit reset",
        )

    def _result(self, count: int, now: int) -> RateLimitResult:
        maximum = self.profile.max_requests
        return RateLimitResult(
            allowed=count <= maximum,
            remaining=max(0, maximum - count),
            reset_at=now + self.profile.window_ms,
            total_hits=count,
            limit=maximum,
        )


class RateLimiterFactory:
    """Build limiters for the named profiles over a single store."""

    def __init__(
        self,
        store: SlidingWindowStore,
        profiles: dict[RateProfileName, RateLimitProfile] | None = None,
        *,
        store_timeout: float = 0.5,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._profiles = profiles or default_profiles()
        self._store_timeout = store_timeout
        self._clock = clock
        self._limiters: dict[RateProfileName, RateLimiter] = {}

    def create(self, profile: RateLimitProfile) -> RateLimiter:
        return RateLimiter(
            self._store,
            profile,
            store_timeout=self._store_timeout,
            clock=self._clock,
        )

    def for_profile(self, name: RateProfileName) -> RateLimiter:
        """Return the (cached) limiter for a named profile."""
        limiter = self._limiters.get(name)
        if limiter is None:
            limiter = self.create(self._profiles[name])
            self._limiters[name] = limiter
        return limiter
