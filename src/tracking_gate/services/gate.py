"""Admission pipeline composing authentication, scoping, quotas and integrity.

A request moves through the stages below strictly in order; the first stage
that returns `Denied` ends evaluation::

    AUTHENTICATED -> SITE_SCOPED -> PERMISSION_CHECKED -> RATE_CHECKED
        -> INTEGRITY_VERIFIED (write routes) -> ADMITTED

Each stage is an async function ``(request, rule, state) -> Admitted | Denied``
and knows nothing about the web framework; `tracking_gate.api.v1.dependencies`
adapts requests and outcomes to FastAPI.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TypeVar

from tracking_gate.core.errors import (
    AuthError,
    AuthInvalid,
    AuthRequired,
    GateError,
    PermissionDenied,
    RateLimitExceeded,
    SiteAccessDenied,
    StoreUnavailable,
)
from tracking_gate.core.security import hash_key
from tracking_gate.services.integrity import (
    IntegrityService,
    VerificationResult,
    envelope_from_headers,
    now_ms,
)
from tracking_gate.services.principals import PrincipalStore, PrincipalStoreError, Site
from tracking_gate.services.rate_limiter import RateLimiterFactory, RateLimitResult, RateProfileName
from tracking_gate.services.stores import bounded
from tracking_gate.services.tokens import (
    Principal,
    TokenService,
    can_access_site,
    extract_bearer_token,
    missing_permissions,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GateStage(str, Enum):
    AUTHENTICATED = "authenticated"
    SITE_SCOPED = "site_scoped"
    PERMISSION_CHECKED = "permission_checked"
    RATE_CHECKED = "rate_checked"
    INTEGRITY_VERIFIED = "integrity_verified"
    ADMITTED = "admitted"


@dataclass(frozen=True)
class GateRequest:
    """Framework-neutral view of an inbound request.

    `headers` keys are expected in lower case. `target_site_id` comes from the
    route path and `body_site_id` from a ``site_id`` field in a JSON body.
    """

    method: str
    path: str
    headers: Mapping[str, str]
    client_ip: str
    body: bytes = b""
    target_site_id: str | None = None
    body_site_id: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class RouteRule:
    """Admission requirements for one route."""

    name: str
    required_permissions: tuple[str, ...] = ()
    rate_profile: RateProfileName = RateProfileName.API
    requires_integrity: bool = False
    requires_auth: bool = True
    allow_token: bool = True
    allow_api_key: bool = True


@dataclass(frozen=True)
class Admitted:
    """Pipeline state so far; the final value is the admission decision."""

    principal: Principal | None = None
    site: Site | None = None
    rate_limit: RateLimitResult | None = None
    integrity: VerificationResult | None = None


@dataclass(frozen=True)
class Denied:
    stage: GateStage
    error: GateError
    rate_limit: RateLimitResult | None = None


def declared_site_id(body: bytes) -> str | None:
    """Return the ``site_id`` a JSON object body names, if any.

    Bodies that are not JSON objects declare no site; they are still covered
    by the signature check on write routes.
    """
    if not body:
        return None
    try:
        document = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(document, dict):
        return None
    site_id = document.get("site_id")
    if site_id is None:
        return None
    return str(site_id)


Outcome = Admitted | Denied
Stage = Callable[[GateRequest, RouteRule, Admitted], Awaitable[Outcome]]


class AccessGate:
    """Evaluate requests against route rules."""

    def __init__(
        self,
        tokens: TokenService,
        integrity: IntegrityService,
        limiters: RateLimiterFactory,
        principals: PrincipalStore,
        *,
        api_key_permissions: Iterable[str] = ("write",),
        store_timeout: float = 0.5,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._tokens = tokens
        self._integrity = integrity
        self._limiters = limiters
        self._principals = principals
        self._api_key_permissions = frozenset(api_key_permissions)
        self._store_timeout = store_timeout
        self._clock = clock

    def stages(self, rule: RouteRule) -> list[tuple[GateStage, Stage]]:
        """Return the ordered stage functions that apply to `rule`."""
        pipeline: list[tuple[GateStage, Stage]] = []
        if rule.requires_auth:
            pipeline += [
                (GateStage.AUTHENTICATED, self.authenticate),
                (GateStage.SITE_SCOPED, self.check_site_scope),
                (GateStage.PERMISSION_CHECKED, self.check_permissions),
            ]
        pipeline.append((GateStage.RATE_CHECKED, self.check_rate_limit))
        if rule.requires_integrity:
            pipeline.append((GateStage.INTEGRITY_VERIFIED, self.verify_integrity))
        return pipeline

    async def evaluate(self, request: GateRequest, rule: RouteRule) -> Outcome:
        """Run the pipeline for `rule`, stopping at the first denial."""
        state = Admitted()
        for stage, run in self.stages(rule):
            outcome = await run(request, rule, state)
            if isinstance(outcome, Denied):
                logger.info(
                    "Denied request %s (%s %s, rule=%s) at %s: %s %s",
                    request.request_id,
                    request.method,
                    request.path,
                    rule.name,
                    stage.value,
                    outcome.error.code,
                    outcome.error.reason,
                )
                return outcome
            state = outcome
        logger.debug("Admitted request %s (rule=%s)", request.request_id, rule.name)
        return state

    # --- Stages -----------------------------------------------------------------

    async def authenticate(self, request: GateRequest, rule: RouteRule, state: Admitted) -> Outcome:
        auth_header = request.headers.get("authorization")
        api_key = request.headers.get("x-api-key")

        if auth_header and rule.allow_token:
            token = extract_bearer_token(auth_header)
            if token is None:
                return Denied(GateStage.AUTHENTICATED, AuthInvalid("Malformed Authorization header"))
            try:
                principal = self._tokens.authenticate(token)
            except AuthError as err:
                return Denied(GateStage.AUTHENTICATED, err)
            return replace(state, principal=principal)

        if api_key and rule.allow_api_key:
            try:
                principal, site = await self._principal_from_api_key(api_key)
            except GateError as err:
                return Denied(GateStage.AUTHENTICATED, err)
            return replace(state, principal=principal, site=site)

        return Denied(GateStage.AUTHENTICATED, AuthRequired())

    async def check_site_scope(
        self, request: GateRequest, rule: RouteRule, state: Admitted
    ) -> Outcome:
        principal = state.principal
        if principal is None:
            return Denied(GateStage.SITE_SCOPED, AuthRequired())
        path_site, body_site = request.target_site_id, request.body_site_id
        if path_site is not None and body_site is not None and path_site != body_site:
            return Denied(
                GateStage.SITE_SCOPED,
                SiteAccessDenied(f"Path names site {path_site} but body names {body_site}"),
            )
        for target in (path_site, body_site):
            if target is not None and not can_access_site(principal, target):
                return Denied(
                    GateStage.SITE_SCOPED,
                    SiteAccessDenied(
                        f"Principal of site {principal.site_id} requested site {target}"
                    ),
                )
        return state

    async def check_permissions(
        self, request: GateRequest, rule: RouteRule, state: Admitted
    ) -> Outcome:
        principal = state.principal
        if principal is None:
            return Denied(GateStage.PERMISSION_CHECKED, AuthRequired())
        missing = missing_permissions(principal, rule.required_permissions)
        if missing:
            return Denied(
                GateStage.PERMISSION_CHECKED,
                PermissionDenied(rule.required_permissions, reason=f"Missing {missing}"),
            )
        return state

    async def check_rate_limit(
        self, request: GateRequest, rule: RouteRule, state: Admitted
    ) -> Outcome:
        limiter = self._limiters.for_profile(rule.rate_profile)
        site_id = state.principal.site_id if state.principal else None
        result = await limiter.check_limit(request.client_ip, site_id)
        if not result.allowed:
            error = RateLimitExceeded(
                result.retry_after_seconds(self._clock()),
                limit=result.limit,
                reset_at_ms=result.reset_at,
                reason=f"{result.total_hits} hits on {limiter.key_for(request.client_ip, site_id)}",
            )
            return Denied(GateStage.RATE_CHECKED, error, rate_limit=result)
        return replace(state, rate_limit=result)

    async def verify_integrity(
        self, request: GateRequest, rule: RouteRule, state: Admitted
    ) -> Outcome:
        principal = state.principal
        if principal is None:
            return Denied(GateStage.INTEGRITY_VERIFIED, AuthRequired())
        try:
            envelope = envelope_from_headers(request.headers, request.body)
            site = state.site
            if site is None:
                site = await self._lookup(self._principals.get_site(principal.site_id), "site lookup")
            if site is None or not site.is_active:
                raise AuthInvalid(f"Site {principal.site_id} unavailable for signed requests")
            result = await self._integrity.verify(envelope, principal.site_id, site.salt)
        except GateError as err:
            return Denied(GateStage.INTEGRITY_VERIFIED, err)
        return replace(state, site=site, integrity=result)

    # --- Helpers ----------------------------------------------------------------

    async def _principal_from_api_key(self, api_key: str) -> tuple[Principal, Site]:
        site_id = await self._lookup(self._principals.resolve_api_key(api_key), "api key lookup")
        if site_id is None:
            raise AuthInvalid(f"Unknown API key {hash_key(api_key)}")
        site = await self._lookup(self._principals.get_site(site_id), "site lookup")
        if site is None or not site.is_active:
            raise AuthInvalid(f"API key {hash_key(api_key)} bound to unavailable site {site_id}")
        principal = Principal(
            site_id=site.site_id,
            tenant_id=site.tenant_id,
            permissions=self._api_key_permissions,
            via="api_key",
        )
        return principal, site

    async def _lookup(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await bounded(awaitable, self._store_timeout, operation)
        except PrincipalStoreError as err:
            raise StoreUnavailable(f"{operation} failed: {err}") from err
