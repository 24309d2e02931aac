"""Session token issuance and verification with multi-tenant claims."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Final

from jose import ExpiredSignatureError, JWTError, jwt

from tracking_gate.core.errors import (
    ClaimIncomplete,
    TokenExpired,
    TokenMalformed,
    WrongTokenType,
)
from tracking_gate.core.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_ISSUER: Final[str] = "universal-tracking"
WILDCARD_PERMISSION: Final[str] = "*"
REFRESH_TOKEN_TYPE: Final[str] = "refresh"
_RESERVED_CLAIMS: Final[frozenset[str]] = frozenset({"iat", "exp", "iss"})


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a single request."""

    site_id: str
    tenant_id: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    user_id: str | None = None
    session_id: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    via: str = "token"

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> Principal:
        """Build a principal from a verified access-token claim set."""
        return cls(
            site_id=str(claims["site_id"]),
            tenant_id=str(claims["tenant_id"]),
            permissions=frozenset(claims.get("permissions") or ()),
            user_id=claims.get("user_id"),
            session_id=claims.get("session_id"),
            issued_at=_from_timestamp(claims.get("iat")),
            expires_at=_from_timestamp(claims.get("exp")),
            via="token",
        )


def _from_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def has_permission(principal: Principal, permission: str) -> bool:
    """Return True if the principal holds `permission` or the wildcard."""
    return permission in principal.permissions or WILDCARD_PERMISSION in principal.permissions


def missing_permissions(principal: Principal, required: Iterable[str]) -> list[str]:
    """Return the subset of `required` the principal does not hold."""
    return [permission for permission in required if not has_permission(principal, permission)]


def can_access_site(principal: Principal, requested_site_id: str) -> bool:
    """Return True only for an exact site match."""
    return principal.site_id == requested_site_id


def can_access_tenant(principal: Principal, requested_tenant_id: str) -> bool:
    return principal.tenant_id == requested_tenant_id


def extract_bearer_token(auth_header: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not auth_header:
        return None
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        return None
    return parts[1] or None


def token_expiration(token: str) -> datetime | None:
    """Read the `exp` claim without verifying the signature."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    return _from_timestamp(claims.get("exp"))


def is_token_expired(token: str) -> bool:
    """Return True when the token is unreadable or its `exp` has passed."""
    expires_at = token_expiration(token)
    if expires_at is None:
        return True
    return expires_at < datetime.now(UTC)


def _require_tenancy(claims: Mapping[str, Any]) -> None:
    if not claims.get("site_id") or not claims.get("tenant_id"):
        raise ClaimIncomplete()


class TokenService:
    """Mint and verify access and refresh tokens.

    Access tokens are short-lived and signed with `secret`; refresh tokens are
    long-lived, carry ``type = "refresh"`` and are signed with a secret derived
    from (but distinct from) the access secret so neither verifies as the other.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str = DEFAULT_ISSUER,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self._secret = secret
        self._refresh_secret = f"{secret}_refresh"
        self._algorithm = algorithm
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenService:
        return cls(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    def issue_access_token(self, claims: Mapping[str, Any]) -> str:
        """Return a signed access token for `claims`.

        Raises:
            ClaimIncomplete: If `site_id` or `tenant_id` is missing or empty.
        """
        _require_tenancy(claims)
        now = datetime.now(UTC)
        payload = {key: value for key, value in claims.items() if key not in _RESERVED_CLAIMS}
        payload.setdefault("sub", claims.get("user_id") or claims["site_id"])
        payload["permissions"] = sorted(set(claims.get("permissions") or ()))
        payload.update(
            {
                "iat": int(now.timestamp()),
                "exp": int((now + self.access_ttl).timestamp()),
                "iss": self.issuer,
            }
        )
        # Optional claims are omitted rather than serialized as null.
        payload = {key: value for key, value in payload.items() if value is not None}
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def issue_refresh_token(self, user_id: str, site_id: str, tenant_id: str) -> str:
        """Return a signed refresh token for a user of one site."""
        _require_tenancy({"site_id": site_id, "tenant_id": tenant_id})
        now = datetime.now(UTC)
        payload = {
            "sub": user_id,
            "site_id": site_id,
            "tenant_id": tenant_id,
            "type": REFRESH_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + self.refresh_ttl).timestamp()),
            "iss": self.issuer,
        }
        return jwt.encode(payload, self._refresh_secret, algorithm=self._algorithm)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        """Verify an access token and return its claim set.

        Raises:
            TokenExpired: If the token is past its expiry.
            TokenMalformed: If the signature, issuer or structure is invalid.
            ClaimIncomplete: If `site_id` or `tenant_id` is absent.
        """
        claims = self._decode(token, self._secret, label="token")
        _require_tenancy(claims)
        return claims

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        """Verify a refresh token and return its claim set.

        Raises:
            WrongTokenType: If the token is not tagged as a refresh token.
        """
        claims = self._decode(token, self._refresh_secret, label="refresh token")
        if claims.get("type") != REFRESH_TOKEN_TYPE:
            raise WrongTokenType()
        _require_tenancy(claims)
        return claims

    def authenticate(self, token: str) -> Principal:
        """Verify an access token and return the principal it describes."""
        return Principal.from_claims(self.verify_access_token(token))

    def _decode(self, token: str, secret: str, *, label: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                issuer=self.issuer,
            )
        except ExpiredSignatureError as err:
            raise TokenExpired(f"{label.capitalize()} expired") from err
        except JWTError as err:
            logger.debug("Rejected %s: %s", label, err)
            raise TokenMalformed(f"Invalid {label}") from err
