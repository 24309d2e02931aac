# src/tracking_gate/api/v1/endpoints/sites.py
"""Site-scoped event endpoints guarded by the access gate.

Storage and retrieval of events belong to the analytics pipeline; these
handlers only run once the gate has admitted the request.
"""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status

from tracking_gate.api.v1.dependencies import GATE_ERROR_RESPONSES, require_access
from tracking_gate.core.errors import AuthRequired
from tracking_gate.schemas.events import EventAccepted, EventList, WebhookAccepted
from tracking_gate.services.gate import Admitted, RouteRule
from tracking_gate.services.integrity import now_ms
from tracking_gate.services.rate_limiter import RateProfileName

router = APIRouter(prefix="/sites", tags=["sites"], responses=GATE_ERROR_RESPONSES)

CURRENT_SITE_RULE = RouteRule("sites.current", allow_api_key=False)
READ_EVENTS_RULE = RouteRule("events.read", required_permissions=("read",))
TRACK_EVENT_RULE = RouteRule(
    "events.track",
    required_permissions=("write",),
    rate_profile=RateProfileName.TRACKING,
    requires_integrity=True,
)
WEBHOOK_RULE = RouteRule(
    "webhooks.receive",
    required_permissions=("write",),
    rate_profile=RateProfileName.WEBHOOK,
    requires_integrity=True,
)

CurrentSiteDep = Annotated[Admitted, Depends(require_access(CURRENT_SITE_RULE))]
ReadEventsDep = Annotated[Admitted, Depends(require_access(READ_EVENTS_RULE))]
TrackEventDep = Annotated[Admitted, Depends(require_access(TRACK_EVENT_RULE))]
WebhookDep = Annotated[Admitted, Depends(require_access(WEBHOOK_RULE))]


@router.get("/current")
async def get_current_site(admitted: CurrentSiteDep) -> dict[str, object]:
    """Return the site and permissions carried by the caller's token."""
    principal = admitted.principal
    if principal is None:
        raise AuthRequired()
    return {
        "site_id": principal.site_id,
        "tenant_id": principal.tenant_id,
        "user_id": principal.user_id,
        "permissions": sorted(principal.permissions),
    }


@router.get("/{site_id}/events", response_model=EventList)
async def list_site_events(site_id: str, admitted: ReadEventsDep) -> EventList:
    """List events for a site the caller is scoped to."""
    return EventList(site_id=site_id)


@router.post(
    "/{site_id}/events",
    response_model=EventAccepted,
    status_code=status.HTTP_201_CREATED,
)
async def track_event(site_id: str, admitted: TrackEventDep) -> EventAccepted:
    """Accept a signed tracking event for hand-off to the analytics store."""
    return EventAccepted(
        event_id=f"event_{uuid.uuid4().hex}",
        site_id=site_id,
        timestamp=now_ms(),
    )


@router.post(
    "/{site_id}/webhooks",
    response_model=WebhookAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_webhook(site_id: str, admitted: WebhookDep) -> WebhookAccepted:
    return WebhookAccepted(site_id=site_id, received_at=now_ms())
