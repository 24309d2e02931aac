"""Shared Pydantic schemas for common API elements."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Body returned for every rejected request."""

    model_config = ConfigDict(extra="allow")

    success: bool = Field(default=False)
    error: str = Field(..., description="Client-safe description of the failure.")
    code: str = Field(..., description="Stable machine-readable error code.")
