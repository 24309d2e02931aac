# src/tracking_gate/api/v1/endpoints/auth.py
"""Token exchange endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from tracking_gate.api.v1.dependencies import SecurityContextDep, require_access
from tracking_gate.schemas.auth import RefreshRequest, TokenResponse
from tracking_gate.services.gate import Admitted, RouteRule
from tracking_gate.services.rate_limiter import RateProfileName

router = APIRouter(prefix="/auth", tags=["authentication"])

REFRESH_RULE = RouteRule(
    "auth.refresh",
    rate_profile=RateProfileName.AUTH,
    requires_auth=False,
)

RefreshGateDep = Annotated[Admitted, Depends(require_access(REFRESH_RULE))]


@router.post("/refresh", response_model=TokenResponse)
async def refresh_access_token(
    payload: RefreshRequest,
    admitted: RefreshGateDep,
    context: SecurityContextDep,
) -> TokenResponse:
    """Exchange a refresh token for a new access token.

    Refresh tokens carry no permissions, so the new access token only grants
    access to the caller's own site metadata until permissions are re-issued
    by the account service.
    """
    claims = context.tokens.verify_refresh_token(payload.refresh_token)
    access_token = context.tokens.issue_access_token(
        {
            "sub": claims["sub"],
            "user_id": claims["sub"],
            "site_id": claims["site_id"],
            "tenant_id": claims["tenant_id"],
            "permissions": [],
        }
    )
    return TokenResponse(
        access_token=access_token,
        expires_in=int(context.tokens.access_ttl.total_seconds()),
    )
