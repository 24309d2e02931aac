"""Liveness and readiness endpoints; not behind the gate."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from tracking_gate.api.v1.dependencies import SecurityContextDep
from tracking_gate.core.errors import StoreUnavailable
from tracking_gate.services.integrity import now_ms

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health")
async def health_check() -> dict[str, object]:
    """Health check endpoint to verify the service is running."""
    return {"status": "healthy", "timestamp": now_ms()}


@router.get("/ready", response_model=None)
async def readiness_check(context: SecurityContextDep) -> dict[str, str] | JSONResponse:
    """Report whether the shared store is reachable."""
    try:
        reachable = await context.ping()
    except StoreUnavailable as err:
        logger.warning("Readiness check failed: %s", err.reason)
        reachable = False
    if not reachable:
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return {"status": "ready"}
