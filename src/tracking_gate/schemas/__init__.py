"""Pydantic schemas for the tracking gate API."""

from .auth import RefreshRequest, TokenResponse
from .common import ErrorResponse
from .events import EventAccepted, EventList, WebhookAccepted

__all__ = [
    "ErrorResponse",
    "EventAccepted",
    "EventList",
    "RefreshRequest",
    "TokenResponse",
    "WebhookAccepted",
]
