"""Request signing and replay protection for write traffic.

A signed request carries ``X-Signature``, ``X-Timestamp`` (epoch ms) and
``X-Nonce`` headers. The signature is HMAC-SHA256 over the canonical message
``site_id:timestamp:nonce:payload`` keyed with the shared secret combined with
the target site's salt. Field order and delimiter are a wire contract with
signing clients.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Final

from tracking_gate.core.errors import (
    EnvelopeMalformed,
    HeadersMissing,
    NonceReused,
    SignatureMismatch,
    TimestampInFuture,
    TooOld,
)
from tracking_gate.core.security import constant_time_equals, derive_site_key, hmac_hexdigest
from tracking_gate.services.stores import NonceStore, bounded

logger = logging.getLogger(__name__)

SIGNATURE_HEADER: Final[str] = "X-Signature"
TIMESTAMP_HEADER: Final[str] = "X-Timestamp"
NONCE_HEADER: Final[str] = "X-Nonce"
DEFAULT_MAX_AGE_MS: Final[int] = 300_000  # 5 minutes


def now_ms() -> int:
    """Return wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SignedEnvelope:
    """Signature material for one request."""

    signature: str
    timestamp: int
    nonce: str
    payload: bytes

    def headers(self) -> dict[str, str]:
        """Return the HTTP headers a client sends alongside `payload`."""
        return {
            SIGNATURE_HEADER: self.signature,
            TIMESTAMP_HEADER: str(self.timestamp),
            NONCE_HEADER: self.nonce,
        }


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    age_ms: int
    nonce: str


def _as_bytes(payload: bytes | str) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def canonical_message(site_id: str, timestamp: int, nonce: str, payload: bytes | str) -> bytes:
    """Return ``site_id:timestamp:nonce:payload`` as bytes."""
    return f"{site_id}:{timestamp}:{nonce}:".encode() + _as_bytes(payload)


def generate_nonce(timestamp_ms: int) -> str:
    """Return a time-prefixed nonce with 64 random bits."""
    return f"{timestamp_ms}-{secrets.token_hex(8)}"


def nonce_key(site_id: str, nonce: str) -> str:
    return f"nonce:{site_id}:{nonce}"


def sign_envelope(
    payload: bytes | str,
    site_id: str,
    secret: str,
    site_salt: str | None = None,
    *,
    timestamp_ms: int | None = None,
) -> SignedEnvelope:
    """Sign `payload` for `site_id` the way a tracking client does."""
    timestamp = now_ms() if timestamp_ms is None else timestamp_ms
    nonce = generate_nonce(timestamp)
    body = _as_bytes(payload)
    signature = hmac_hexdigest(
        derive_site_key(secret, site_salt),
        canonical_message(site_id, timestamp, nonce, body),
    )
    return SignedEnvelope(signature=signature, timestamp=timestamp, nonce=nonce, payload=body)


def envelope_from_headers(headers: Mapping[str, str], body: bytes) -> SignedEnvelope:
    """Build an envelope from request headers and the raw body.

    Header lookup is case-insensitive.

    Raises:
        HeadersMissing: If any of the three integrity headers is absent.
        EnvelopeMalformed: If the timestamp is not an integer.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    signature = lowered.get(SIGNATURE_HEADER.lower())
    timestamp = lowered.get(TIMESTAMP_HEADER.lower())
    nonce = lowered.get(NONCE_HEADER.lower())
    if not signature or not timestamp or not nonce:
        raise HeadersMissing()
    try:
        parsed_timestamp = int(timestamp)
    except ValueError as err:
        raise EnvelopeMalformed(f"Unparsable timestamp {timestamp!r}") from err
    return SignedEnvelope(
        signature=signature,
        timestamp=parsed_timestamp,
        nonce=nonce,
        payload=body,
    )


class IntegrityService:
    """Verify signed envelopes and enforce single use of each nonce per site."""

    def __init__(
        self,
        secret: str,
        nonce_store: NonceStore,
        *,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        max_clock_skew_ms: int | None = None,
        store_timeout: float = 0.5,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._secret = secret
        self._nonces = nonce_store
        self.max_age_ms = max_age_ms
        self.max_clock_skew_ms = max_age_ms if max_clock_skew_ms is None else max_clock_skew_ms
        self._store_timeout = store_timeout
        self._clock = clock

    def sign(
        self,
        payload: bytes | str,
        site_id: str,
        site_salt: str | None = None,
    ) -> SignedEnvelope:
        """Sign with this service's secret; used by tooling and tests."""
        return sign_envelope(
            payload,
            site_id,
            self._secret,
            site_salt,
            timestamp_ms=self._clock(),
        )

    async def verify(
        self,
        envelope: SignedEnvelope,
        site_id: str,
        site_salt: str | None,
    ) -> VerificationResult:
        """Verify `envelope` for `site_id` and consume its nonce.

        Raises:
            TooOld: If the envelope is older than `max_age_ms`.
            TimestampInFuture: If it is dated beyond the tolerated clock skew.
            NonceReused: If the nonce was already accepted for this site.
            SignatureMismatch: If the signature does not match.
            StoreUnavailable: If the nonce store cannot be reached in time.
        """
        age = self._clock() - envelope.timestamp
        if age > self.max_age_ms:
            raise TooOld(f"Envelope age {age}ms exceeds {self.max_age_ms}ms")
        if -age > self.max_clock_skew_ms:
            raise TimestampInFuture(f"Envelope dated {-age}ms ahead")

        key = nonce_key(site_id, envelope.nonce)
        if await bounded(self._nonces.contains(key), self._store_timeout, "nonce lookup"):
            raise NonceReused()

        expected = hmac_hexdigest(
            derive_site_key(self._secret, site_salt),
            canonical_message(site_id, envelope.timestamp, envelope.nonce, envelope.payload),
        )
        if not constant_time_equals(envelope.signature.strip().lower(), expected):
            raise SignatureMismatch()

        # Keep the nonce until the envelope itself could no longer pass the age check.
        ttl_ms = max(self.max_age_ms, self.max_age_ms - age) + 1
        recorded = await bounded(
            asyncio.shield(self._nonces.add_if_absent(key, ttl_ms)),
            self._store_timeout,
            "nonce registration",
        )
        if not recorded:
            raise NonceReused("Nonce registered by a concurrent request")
        return VerificationResult(valid=True, age_ms=age, nonce=envelope.nonce)
