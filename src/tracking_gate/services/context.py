"""Application-scoped wiring of the admission services.

One `SecurityContext` is built per application and stored on
``app.state.security``. Tests build their own with in-memory stores and their
own secrets instead of patching module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from redis.asyncio import Redis

from tracking_gate.core.settings import Settings
from tracking_gate.services.gate import AccessGate
from tracking_gate.services.integrity import IntegrityService
from tracking_gate.services.principals import InMemoryPrincipalStore, PrincipalStore
from tracking_gate.services.rate_limiter import RateLimiterFactory, default_profiles
from tracking_gate.services.stores import (
    InMemoryNonceStore,
    InMemorySlidingWindowStore,
    NonceStore,
    RedisNonceStore,
    RedisSlidingWindowStore,
    SlidingWindowStore,
    bounded,
)
from tracking_gate.services.tokens import TokenService

logger = logging.getLogger(__name__)


@dataclass
class SecurityContext:
    settings: Settings
    tokens: TokenService
    integrity: IntegrityService
    limiters: RateLimiterFactory
    principals: PrincipalStore
    gate: AccessGate
    redis: Redis | None = None

    async def ping(self) -> bool:
        """Return True if the shared store answers within the store timeout."""
        if self.redis is None:
            return True
        return bool(
            await bounded(self.redis.ping(), self.settings.store_timeout_seconds, "store ping")
        )

    async def aclose(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()


def build_security_context(
    settings: Settings,
    *,
    principals: PrincipalStore | None = None,
    redis: Redis | None = None,
    nonce_store: NonceStore | None = None,
    window_store: SlidingWindowStore | None = None,
) -> SecurityContext:
    """Construct the services described by `settings`.

    Explicit stores take precedence over `settings.store_backend`.
    """
    if settings.store_backend == "redis" and (nonce_store is None or window_store is None):
        if redis is None:
            redis = Redis.from_url(
                settings.redis_url,
                socket_timeout=settings.store_timeout_seconds,
                socket_connect_timeout=settings.store_timeout_seconds,
            )
        nonce_store = nonce_store or RedisNonceStore(redis, key_prefix=settings.redis_key_prefix)
        window_store = window_store or RedisSlidingWindowStore(
            redis, key_prefix=settings.redis_key_prefix
        )
    else:
        nonce_store = nonce_store or InMemoryNonceStore(settings.nonce_cache_max_entries)
        window_store = window_store or InMemorySlidingWindowStore()
        if settings.store_backend == "memory":
            logger.info("Using process-local nonce and rate-limit stores")

    if principals is None:
        if settings.sites_file:
            principals = InMemoryPrincipalStore.from_file(settings.sites_file)
        else:
            logger.warning("No principal store configured; API keys will be rejected")
            principals = InMemoryPrincipalStore()

    timeout = settings.store_timeout_seconds
    tokens = TokenService.from_settings(settings)
    integrity = IntegrityService(
        settings.hmac_secret,
        nonce_store,
        max_age_ms=settings.hmac_max_age_ms,
        max_clock_skew_ms=settings.effective_clock_skew_ms,
        store_timeout=timeout,
    )
    limiters = RateLimiterFactory(window_store, default_profiles(settings), store_timeout=timeout)
    gate = AccessGate(
        tokens,
        integrity,
        limiters,
        principals,
        api_key_permissions=settings.api_key_permissions,
        store_timeout=timeout,
    )
    return SecurityContext(
        settings=settings,
        tokens=tokens,
        integrity=integrity,
        limiters=limiters,
        principals=principals,
        gate=gate,
        redis=redis,
    )
