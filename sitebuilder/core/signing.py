"""Webhook payload signing (HMAC-SHA256).

The signature is computed over the exact bytes placed on the wire, so
callers must serialize the body once and pass those same bytes to both
``sign`` and the HTTP client.

Receivers verify by recomputing the HMAC over the raw request body with
their copy of the secret:

    expected = "sha256=" + hmac_sha256(secret, raw_body).hexdigest()
    hmac.compare_digest(expected, request.headers["X-Webhook-Signature"])
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SIGNATURE_PREFIX = "sha256="
SECRET_BYTES = 32


def generate_secret() -> str:
    """Return a new random signing secret (64 hex characters)."""
    return secrets.token_hex(SECRET_BYTES)


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(payload: bytes | str, secret: str) -> str:
    """Compute the hex HMAC-SHA256 digest of ``payload`` keyed by ``secret``."""
    return hmac.new(
        secret.encode("utf-8"),
        _as_bytes(payload),
        hashlib.sha256,
    ).hexdigest()


def signature_header(payload: bytes | str, secret: str) -> str:
    """Value for the X-Webhook-Signature header: ``sha256=<hex>``."""
    return f"{SIGNATURE_PREFIX}{sign(payload, secret)}"


def verify(payload: bytes | str, secret: str, signature: str) -> bool:
    """Check a signature in constant time.

    Accepts either the bare hex digest or the ``sha256=``-prefixed header
    value.
    """
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
