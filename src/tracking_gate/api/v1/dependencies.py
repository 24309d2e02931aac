"""Shared API dependencies running the access gate for each route."""

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tracking_gate.core.errors import GateError, RequestInvalid
from tracking_gate.schemas.common import ErrorResponse
from tracking_gate.services.context import SecurityContext
from tracking_gate.services.gate import (
    Admitted,
    Denied,
    GateRequest,
    RouteRule,
    declared_site_id,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


class GateDenied(Exception):
    """Raised by gate dependencies; rendered by `gate_denied_handler`."""

    def __init__(self, denied: Denied) -> None:
        self.denied = denied
        super().__init__(denied.error.reason)


def get_security_context(request: Request) -> SecurityContext:
    """Return the application-scoped security context."""
    return request.app.state.security


SecurityContextDep = Annotated[SecurityContext, Depends(get_security_context)]


async def build_gate_request(request: Request) -> GateRequest:
    """Translate a Starlette request into the gate's neutral representation.

    The body is read raw because signatures cover the exact bytes sent.
    """
    body = await request.body()
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    return GateRequest(
        method=request.method,
        path=request.url.path,
        headers={key.lower(): value for key, value in request.headers.items()},
        client_ip=request.client.host if request.client else "unknown",
        body=body,
        target_site_id=request.path_params.get("site_id"),
        body_site_id=declared_site_id(body),
        request_id=request_id,
    )


def require_access(rule: RouteRule) -> Callable[[Request, Response], Awaitable[Admitted]]:
    """Return a dependency that admits requests satisfying `rule`.

    Args:
        rule: Admission requirements for the route.

    Returns:
        Dependency yielding the `Admitted` outcome; rate-limit headers are
        copied onto the route's response.

    Raises:
        GateDenied: If any stage rejects the request.
    """

    async def _require_access(request: Request, response: Response) -> Admitted:
        context = get_security_context(request)
        outcome = await context.gate.evaluate(await build_gate_request(request), rule)
        if isinstance(outcome, Denied):
            raise GateDenied(outcome)
        if outcome.rate_limit is not None:
            response.headers.update(outcome.rate_limit.headers())
        request.state.principal = outcome.principal
        return outcome

    return _require_access


async def gate_denied_handler(request: Request, exc: GateDenied) -> JSONResponse:
    """Render a gate denial with the fixed error body and quota headers."""
    error = exc.denied.error
    headers = error.response_headers()
    if exc.denied.rate_limit is not None:
        headers.update(exc.denied.rate_limit.headers())
    return JSONResponse(status_code=error.status_code, content=error.to_body(), headers=headers)


async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
    """Render a `GateError` raised directly by an endpoint."""
    logger.info(
        "Rejected request %s (%s %s): %s %s",
        getattr(request.state, "request_id", "-"),
        request.method,
        request.url.path,
        exc.code,
        exc.reason,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.response_headers(),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render schema validation failures in the gate's error shape."""
    fields = sorted(
        {
            ".".join(str(part) for part in error["loc"][1:])
            for error in exc.errors()
            if len(error["loc"]) > 1
        }
    )
    return await gate_error_handler(request, RequestInvalid(fields, reason=f"Invalid fields {fields}"))


GATE_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    401: {"model": ErrorResponse, "description": "Authentication or signature failure"},
    403: {"model": ErrorResponse, "description": "Site or permission denied"},
    429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
}
