"""Webhook signature verification: constant-time HMAC-SHA256.

Security contract:
- EcoManager signs the raw JSON body with the per-webhook secret and sends
  the hex digest in the X-EcoManager-Signature header
- Comparison uses hmac.compare_digest() (constant-time, no timing attacks)
- Any exception during comparison counts as a failed verification
- Empty secret or empty signature -> verification always fails (fail-closed)
"""

from __future__ import annotations

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-ecomanager-signature"


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Verify an EcoManager webhook signature.

    Args:
        body: Raw request body bytes, exactly as received
        signature: Value of X-EcoManager-Signature header
        secret: WebhookConfiguration.webhook_secret for the sending webhook

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Webhook secret not configured, rejecting webhook")
        return False
    if not signature:
        return False

    try:
        expected = compute_signature(secret, body)
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii"))
    except Exception:
        # Non-ASCII header values land here
        logger.warning("Signature verification error", exc_info=True)
        return False
