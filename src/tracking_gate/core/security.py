"""Message authentication primitives built on HMAC-SHA256."""
from __future__ import annotations

import hashlib
import hmac

SIGNATURE_ALGORITHM = "sha256"


def derive_site_key(secret: str, site_salt: str | None = None) -> bytes:
    """Return the signing key for a site.

    Args:
        secret: Shared base secret.
        site_salt: Per-site salt; when given the key becomes ``secret:salt`` so a
            signature minted for one site never verifies for another.

    Returns:
        Key bytes suitable for `hmac.new`.
    """
    if site_salt:
        return f"{secret}:{site_salt}".encode("utf-8")
    return secret.encode("utf-8")


def hmac_hexdigest(key: bytes, message: bytes) -> str:
    """Return the hex-encoded HMAC of `message` under `key`."""
    return hmac.new(key, message, getattr(hashlib, SIGNATURE_ALGORITHM)).hexdigest()


def constant_time_equals(provided: str, expected: str) -> bool:
    """Compare two signatures without leaking where or whether lengths differ.

    The provided value is padded or truncated to the expected length before
    the constant-time comparison, and the length check is folded in afterwards,
    so the work done depends only on the length of `expected`.
    """
    expected_bytes = expected.encode("utf-8")
    provided_bytes = provided.encode("utf-8")
    same_length = len(provided_bytes) == len(expected_bytes)
    padded = provided_bytes[: len(expected_bytes)].ljust(len(expected_bytes), b"\0")
    digest_equal = hmac.compare_digest(padded, expected_bytes)
    return digest_equal & same_length


def hash_key(api_key: str) -> str:
    """Return a short SHA-256 fingerprint of an API key for log lines."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
