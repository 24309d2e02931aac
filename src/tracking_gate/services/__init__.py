# src/tracking_gate/services/__init__.py
"""Admission services for the tracking gate."""

from .context import SecurityContext, build_security_context
from .gate import AccessGate, Admitted, Denied, GateRequest, GateStage, RouteRule
from .integrity import IntegrityService, SignedEnvelope, sign_envelope
from .principals import InMemoryPrincipalStore, PrincipalStore, Site, SiteStatus
from .rate_limiter import RateLimiter, RateLimiterFactory, RateLimitResult, RateProfileName
from .tokens import Principal, TokenService

__all__ = [
    "AccessGate",
    "Admitted",
    "Denied",
    "GateRequest",
    "GateStage",
    "RouteRule",
    "IntegrityService",
    "SignedEnvelope",
    "sign_envelope",
    "InMemoryPrincipalStore",
    "PrincipalStore",
    "Site",
    "SiteStatus",
    "RateLimiter",
    "RateLimiterFactory",
    "RateLimitResult",
    "RateProfileName",
    "Principal",
    "TokenService",
    "SecurityContext",
    "build_security_context",
]
