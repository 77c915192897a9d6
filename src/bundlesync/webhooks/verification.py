"""HMAC-SHA256 webhook signature verification.

The platform signs the raw request body with the shared secret and sends the
base64 digest in a header. Verification must run on the unparsed bytes,
before any JSON decoding.
"""

from __future__ import annotations

import base64
import hashlib
import hmac


def compute_signature(body: bytes, secret: str) -> str:
    """Base64-encoded HMAC-SHA256 of ``body`` under ``secret``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of a provided signature.

    An empty secret or a missing signature never verifies.
    """
    if not secret or not signature:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))
