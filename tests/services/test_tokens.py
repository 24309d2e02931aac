# tests/services/test_tokens.py
"""Tests for session token issuance, verification and principal helpers."""

import time
from datetime import timedelta

import pytest
from jose import jwt

from tracking_gate.core.errors import (
    ClaimIncomplete,
    TokenExpired,
    TokenMalformed,
    WrongTokenType,
)
from tracking_gate.services.tokens import (
    Principal,
    TokenService,
    can_access_site,
    can_access_tenant,
    extract_bearer_token,
    has_permission,
    is_token_expired,
    missing_permissions,
    token_expiration,
)

SECRET = "tokens-test-secret-0123456789abcdef0123456789"


@pytest.fixture()
def service() -> TokenService:
    return TokenService(SECRET)


def _claims(**overrides):
    claims = {
        "site_id": "site_1",
        "tenant_id": "tenant_1",
        "user_id": "user_1",
        "session_id": "sess_1",
        "permissions": ["write", "read"],
    }
    claims.update(overrides)
    return claims


class TestAccessTokens:
    def test_round_trip_preserves_tenancy_claims(self, service):
        """A freshly issued token verifies and keeps its site scope."""
        token = service.issue_access_token(_claims())
        claims = service.verify_access_token(token)

        assert claims["site_id"] == "site_1"
        assert claims["tenant_id"] == "tenant_1"
        assert claims["user_id"] == "user_1"
        assert claims["permissions"] == ["read", "write"]
        assert claims["iss"] == "universal-tracking"
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_authenticate_builds_principal(self, service):
        principal = service.authenticate(service.issue_access_token(_claims()))

        assert principal.site_id == "site_1"
        assert principal.tenant_id == "tenant_1"
        assert principal.permissions == frozenset({"read", "write"})
        assert principal.session_id == "sess_1"
        assert principal.via == "token"
        assert principal.expires_at is not None

    def test_optional_claims_are_omitted(self, service):
        token = service.issue_access_token(_claims(user_id=None, session_id=None))
        claims = jwt.get_unverified_claims(token)
        assert "user_id" not in claims
        assert "session_id" not in claims
        assert claims["sub"] == "site_1"

    @pytest.mark.parametrize("missing", ["site_id", "tenant_id"])
    def test_issue_requires_tenancy(self, service, missing):
        """Tokens are never minted without both site and tenant."""
        with pytest.raises(ClaimIncomplete):
            service.issue_access_token(_claims(**{missing: None}))

    def test_expired_token_is_rejected(self):
        service = TokenService(SECRET, access_ttl=timedelta(seconds=-30))
        token = service.issue_access_token(_claims())
        with pytest.raises(TokenExpired):
            service.verify_access_token(token)

    def test_wrong_secret_is_rejected(self, service):
        other = TokenService("another-secret-0123456789abcdef0123456789")
        with pytest.raises(TokenMalformed):
            service.verify_access_token(other.issue_access_token(_claims()))

    def test_wrong_issuer_is_rejected(self, service):
        other = TokenService(SECRET, issuer="someone-else")
        with pytest.raises(TokenMalformed):
            service.verify_access_token(other.issue_access_token(_claims()))

    def test_garbage_is_rejected(self, service):
        with pytest.raises(TokenMalformed):
            service.verify_access_token("not.a.valid.jwt")

    def test_token_without_tenant_is_rejected(self, service):
        """Signed tokens lacking tenancy claims still fail verification."""
        now = int(time.time())
        token = jwt.encode(
            {"sub": "u", "site_id": "site_1", "iat": now, "exp": now + 60, "iss": service.issuer},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(ClaimIncomplete):
            service.verify_access_token(token)

    def test_refresh_token_is_not_an_access_token(self, service):
        refresh = service.issue_refresh_token("user_1", "site_1", "tenant_1")
        with pytest.raises(TokenMalformed):
            service.verify_access_token(refresh)


class TestRefreshTokens:
    def test_round_trip(self, service):
        token = service.issue_refresh_token("user_1", "site_1", "tenant_1")
        claims = service.verify_refresh_token(token)

        assert claims["sub"] == "user_1"
        assert claims["type"] == "refresh"
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_access_token_is_not_a_refresh_token(self, service):
        """Access tokens are signed with a different secret."""
        with pytest.raises(TokenMalformed):
            service.verify_refresh_token(service.issue_access_token(_claims()))

    def test_untyped_token_under_refresh_secret_is_rejected(self, service):
        now = int(time.time())
        token = jwt.encode(
            {
                "sub": "user_1",
                "site_id": "site_1",
                "tenant_id": "tenant_1",
                "type": "access",
                "iat": now,
                "exp": now + 60,
                "iss": service.issuer,
            },
            f"{SECRET}_refresh",
            algorithm="HS256",
        )
        with pytest.raises(WrongTokenType):
            service.verify_refresh_token(token)


class TestPrincipalHelpers:
    def _principal(self, *permissions: str) -> Principal:
        return Principal("site_1", "tenant_1", permissions=frozenset(permissions))

    def test_has_permission(self):
        principal = self._principal("read")
        assert has_permission(principal, "read")
        assert not has_permission(principal, "write")

    def test_wildcard_grants_everything(self):
        principal = self._principal("*")
        assert has_permission(principal, "write")
        assert missing_permissions(principal, ["read", "write", "admin"]) == []

    def test_missing_permissions_lists_each_gap(self):
        principal = self._principal("read")
        assert missing_permissions(principal, ["read", "write", "admin"]) == ["write", "admin"]

    def test_site_access_requires_exact_match(self):
        principal = self._principal()
        assert can_access_site(principal, "site_1")
        assert not can_access_site(principal, "site_10")
        assert not can_access_site(principal, "site")

    def test_tenant_access_requires_exact_match(self):
        principal = self._principal()
        assert can_access_tenant(principal, "tenant_1")
        assert not can_access_tenant(principal, "tenant_2")


class TestBearerExtraction:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("Bearer ", None),
            ("bearer abc", None),
            ("Token abc", None),
            ("Bearer a b", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer_token(self, header, expected):
        assert extract_bearer_token(header) == expected


class TestExpirationHelpers:
    def test_fresh_token_is_not_expired(self, service):
        token = service.issue_access_token(_claims())
        assert token_expiration(token) is not None
        assert is_token_expired(token) is False

    def test_past_token_is_expired(self):
        service = TokenService(SECRET, access_ttl=timedelta(seconds=-30))
        assert is_token_expired(service.issue_access_token(_claims())) is True

    def test_unreadable_token_counts_as_expired(self):
        assert token_expiration("garbage") is None
        assert is_token_expired("garbage") is True
