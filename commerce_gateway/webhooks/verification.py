"""Webhook signature verification: constant-time HMAC-SHA256.

Security contract:
- Signature is computed over the raw request body, before any JSON parsing
- Comparison uses hmac.compare_digest() on equal-length digests (no timing attacks)
- Missing secret -> verification always fails (fail-closed)
- Missing header, non-hex or wrong-length signature -> verification fails
- The shared secret is never logged; signatures only by length
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Provider-Signature"

_DIGEST_SIZE = hashlib.sha256().digest_size
_PREFIX = "sha256="


def sign(body: bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature a provider would send for ``body``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _decode_signature(signature_header: str) -> bytes | None:
    value = signature_header.strip()
    if value.lower().startswith(_PREFIX):
        value = value[len(_PREFIX):]
    try:
        return binascii.unhexlify(value)
    except (binascii.Error, ValueError):
        return None


def verify(body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """Verify a webhook HMAC-SHA256 signature.

    The provider sends a hex digest (optionally prefixed ``sha256=``) in
    the X-Provider-Signature header.

    Args:
        body: Raw request body bytes
        signature_header: Value of the signature header
        secret: Shared webhook secret

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Webhook secret not configured, rejecting webhook")
        return False
    if not signature_header:
        return False

    provided = _decode_signature(signature_header)
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if provided is None or len(provided) != _DIGEST_SIZE:
        # Still run a comparison so malformed input costs the same as a mismatch
        hmac.compare_digest(expected, expected)
        logger.warning(
            "Webhook signature malformed (length=%d, body_bytes=%d)",
            len(signature_header),
            len(body),
        )
        return False

    valid = hmac.compare_digest(expected, provided)
    if not valid:
        logger.warning("Webhook signature mismatch (body_bytes=%d)", len(body))
    return valid


class WebhookVerifier:
    """Verifier bound to one shared secret."""

    def __init__(self, secret: str | None) -> None:
        self._secret = secret or ""

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def verify(self, body: bytes, signature_header: str | None) -> bool:
        return verify(body, signature_header, self._secret)

    def __repr__(self) -> str:
        return f"WebhookVerifier(configured={self.configured})"
