"""Error taxonomy for the admission pipeline.

Every rejection the gate can produce is a `GateError` subclass carrying the
public response code, HTTP status and a client-safe message. The `reason`
attribute holds internal detail for logs and never reaches the client unless
the subclass whitelists it through `response_extras`.
"""

from __future__ import annotations

from typing import Any


class GateError(Exception):
    """Base exception for all admission failures."""

    code: str = "GATE_ERROR"
    status_code: int = 500
    message: str = "Request rejected"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.message
        super().__init__(self.reason)

    def response_extras(self) -> dict[str, Any]:
        """Return additional, safe-to-disclose body fields."""
        return {}

    def response_headers(self) -> dict[str, str]:
        """Return extra HTTP headers for the rejection response."""
        return {}

    def to_body(self) -> dict[str, Any]:
        """Render the fixed `{success, error, code}` response body."""
        body: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        body.update(self.response_extras())
        return body


# --- Authentication -------------------------------------------------------------


class AuthError(GateError):
    """Raised when a request cannot be tied to a principal."""

    code = "AUTH_INVALID"
    status_code = 401
    message = "Invalid authentication credentials"


class AuthRequired(AuthError):
    code = "AUTH_REQUIRED"
    message = "Authentication required"


class AuthInvalid(AuthError):
    """Credential present but unusable (unknown key, inactive site, bad token)."""


class TokenExpired(AuthError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Token expired")


class TokenMalformed(AuthError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Invalid token")


class ClaimIncomplete(AuthError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Invalid token: missing site_id or tenant_id")


class WrongTokenType(AuthError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Invalid token type")


# --- Request integrity ----------------------------------------------------------


class IntegrityError(GateError):
    """Raised when a signed request envelope fails verification."""

    code = "HMAC_INVALID"
    status_code = 401
    message = "Invalid HMAC signature"
    detail = "Verification failed"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.detail)

    def response_extras(self) -> dict[str, Any]:
        return {"details": self.detail}


class HeadersMissing(IntegrityError):
    code = "HMAC_HEADERS_MISSING"
    status_code = 400
    message = "Missing required HMAC headers"
    detail = "Missing required HMAC headers"

    def response_extras(self) -> dict[str, Any]:
        return {}


class EnvelopeMalformed(IntegrityError):
    detail = "Invalid timestamp"


class TooOld(IntegrityError):
    detail = "Request too old"


class TimestampInFuture(IntegrityError):
    detail = "Request timestamp in the future"


class NonceReused(IntegrityError):
    detail = "Nonce already used"


class SignatureMismatch(IntegrityError):
    detail = "Invalid signature"


# --- Authorization --------------------------------------------------------------


class AccessError(GateError):
    """Raised when an authenticated principal may not perform the request."""

    status_code = 403


class SiteAccessDenied(AccessError):
    code = "SITE_ACCESS_DENIED"
    message = "Access denied: insufficient permissions for this site"


class PermissionDenied(AccessError):
    code = "PERMISSION_DENIED"
    message = "Insufficient permissions"

    def __init__(self, required: list[str] | tuple[str, ...], reason: str | None = None) -> None:
        self.required = list(required)
        super().__init__(reason)

    def response_extras(self) -> dict[str, Any]:
        return {"required": self.required}


# --- Rate limiting --------------------------------------------------------------


class RateLimitError(GateError):
    status_code = 429


class RateLimitExceeded(RateLimitError):
    code = "RATE_LIMIT_EXCEEDED"
    message = "Too many requests"

    def __init__(
        self,
        retry_after: int,
        *,
        limit: int,
        reset_at_ms: int,
        reason: str | None = None,
    ) -> None:
        self.retry_after = max(0, retry_after)
        self.limit = limit
        self.reset_at_ms = reset_at_ms
        super().__init__(reason)

    def response_extras(self) -> dict[str, Any]:
        return {"retryAfter": self.retry_after}

    def response_headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


# --- Request shape ------------------------------------------------------------


class RequestInvalid(GateError):
    """Raised when an admitted request fails schema validation."""

    code = "VALIDATION_ERROR"
    status_code = 422
    message = "Invalid request body"

    def __init__(self, fields: list[str], reason: str | None = None) -> None:
        self.fields = fields
        super().__init__(reason)

    def response_extras(self) -> dict[str, Any]:
        return {"fields": self.fields}


# --- Infrastructure -------------------------------------------------------------


class InfraError(GateError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    message = "Service temporarily unavailable"


class StoreUnavailable(InfraError):
    """Raised when a shared store round trip fails or times out."""
