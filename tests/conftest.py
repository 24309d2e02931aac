# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

os.environ.setdefault("JWT_SECRET", "test-jwt-secret-0123456789abcdef0123456789")
os.environ.setdefault("HMAC_SECRET", "test-hmac-secret-0123456789abcdef012345678")
os.environ.setdefault("STORE_BACKEND", "memory")

from tracking_gate.core.settings import Settings
from tracking_gate.main import create_app
from tracking_gate.services.context import SecurityContext, build_security_context
from tracking_gate.services.integrity import sign_envelope
from tracking_gate.services.principals import InMemoryPrincipalStore, Site, SiteStatus
from tracking_gate.services.tokens import TokenService

TEST_JWT_SECRET = "unit-jwt-secret-abcdefghijklmnopqrstuvwxyz012345"
TEST_HMAC_SECRET = "unit-hmac-secret-abcdefghijklmnopqrstuvwxyz01234"

SITE_1_KEY = "ut_live_site1_key"
SITE_2_KEY = "ut_live_site2_key"
DORMANT_KEY = "ut_live_dormant_key"


def make_settings(**overrides: Any) -> Settings:
    """Return settings isolated from the developer's environment and .env file."""
    values: dict[str, Any] = {
        "jwt_secret": TEST_JWT_SECRET,
        "hmac_secret": TEST_HMAC_SECRET,
        "store_backend": "memory",
        "log_level": "DEBUG",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


def make_sites() -> list[Site]:
    return [
        Site("site_1", "tenant_1", salt="salt-one", api_keys=frozenset({SITE_1_KEY})),
        Site("site_2", "tenant_2", salt="salt-two", api_keys=frozenset({SITE_2_KEY})),
        Site(
            "site_dormant",
            "tenant_1",
            salt="salt-dormant",
            status=SiteStatus.INACTIVE,
            api_keys=frozenset({DORMANT_KEY}),
        ),
    ]


@pytest.fixture()
def test_settings() -> Settings:
    """Provide settings with in-memory stores and fixed secrets."""
    return make_settings()


@pytest.fixture()
def principal_store() -> InMemoryPrincipalStore:
    return InMemoryPrincipalStore(make_sites())


@pytest.fixture()
def security_context(
    test_settings: Settings,
    principal_store: InMemoryPrincipalStore,
) -> SecurityContext:
    return build_security_context(test_settings, principals=principal_store)


@pytest.fixture()
def app(security_context: SecurityContext) -> FastAPI:
    return create_app(context=security_context)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def token_service(security_context: SecurityContext) -> TokenService:
    return security_context.tokens


@pytest.fixture()
def bearer_headers(token_service: TokenService) -> Callable[..., dict[str, str]]:
    """Return a factory building Authorization headers for a site principal."""

    def _headers(
        site_id: str = "site_1",
        tenant_id: str = "tenant_1",
        permissions: list[str] | None = None,
        **claims: Any,
    ) -> dict[str, str]:
        token = token_service.issue_access_token(
            {
                "site_id": site_id,
                "tenant_id": tenant_id,
                "permissions": permissions if permissions is not None else ["read", "write"],
                **claims,
            }
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def signed_request() -> Callable[..., tuple[bytes, dict[str, str]]]:
    """Return a factory producing a body and its integrity headers."""

    def _signed(
        body: bytes = b'{"test":"data"}',
        site_id: str = "site_1",
        salt: str | None = "salt-one",
        **kwargs: Any,
    ) -> tuple[bytes, dict[str, str]]:
        envelope = sign_envelope(body, site_id, TEST_HMAC_SECRET, salt, **kwargs)
        headers = envelope.headers()
        headers["Content-Type"] = "application/json"
        return body, headers

    return _signed
