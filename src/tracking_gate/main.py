# src/tracking_gate/main.py
"""Main entry point for the tracking gate application."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from tracking_gate.api.v1 import auth_router, sites_router, system_router
from tracking_gate.api.v1.dependencies import (
    GateDenied,
    gate_denied_handler,
    gate_error_handler,
    validation_error_handler,
)
from tracking_gate.core.errors import GateError
from tracking_gate.core.logging import configure_logging
from tracking_gate.core.settings import Settings, get_settings
from tracking_gate.services.context import SecurityContext, build_security_context


def create_app(
    settings: Settings | None = None,
    context: SecurityContext | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration; read from the environment when omitted.
        context: Pre-built security services, mainly for tests.

    Returns:
        Configured application with the gate's exception handlers installed.
    """
    settings = settings or (context.settings if context else get_settings())
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        description="Authenticated, rate-limited ingress for site event tracking",
        version=settings.app_version,
        debug=settings.debug,
    )
    app.state.security = context or build_security_context(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
    )

    app.add_exception_handler(GateDenied, gate_denied_handler)  # type: ignore[arg-type]
    app.add_exception_handler(GateError, gate_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]

    app.include_router(system_router)
    app.include_router(system_router, prefix="/api/v1")
    app.include_router(sites_router, prefix="/api")
    app.include_router(auth_router, prefix="/api")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await app.state.security.aclose()

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tracking_gate.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
