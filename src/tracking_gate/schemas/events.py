"""Schemas for the site event endpoints.

Event payloads themselves are opaque to the gate; only acknowledgements are
modelled here.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class EventAccepted(BaseModel):
    success: bool = True
    event_id: str
    site_id: str
    timestamp: int = Field(..., description="Acceptance time in epoch milliseconds.")


class EventList(BaseModel):
    site_id: str
    events: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0


class WebhookAccepted(BaseModel):
    success: bool = True
    site_id: str
    received_at: int
