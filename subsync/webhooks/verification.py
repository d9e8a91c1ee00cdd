"""Webhook signature verification: constant-time HMAC-SHA256.

Both LemonSqueezy (X-Signature) and Razorpay (X-Razorpay-Signature)
sign the raw request body with HMAC-SHA256 and send the hex digest.

Security contract:
- The digest is computed over the exact raw bytes, before any parsing
- All comparisons use hmac.compare_digest() (constant-time)
- Verification failure -> 401 immediately, body is never parsed
- Missing secret -> verification SKIPPED (returns True).  Deliberate
  bypass for environments without secrets; logged at WARNING each time.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping

from subsync.config import WebhookSettings
from subsync.models import Provider

logger = logging.getLogger(__name__)


def sign(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of *body* keyed with *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify(body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """Verify a hex HMAC-SHA256 signature over the raw body.

    Args:
        body: Raw request body bytes
        signature_header: Value of the provider's signature header
        secret: Shared webhook secret; empty or None skips verification

    Returns:
        True if the signature matches, or if no secret is configured
    """
    if not secret:
        logger.warning("Webhook secret not configured; skipping signature verification")
        return True
    if not signature_header:
        return False

    expected = sign(body, secret)
    # Compare bytes: compare_digest rejects non-ASCII str instead of returning False
    return hmac.compare_digest(
        expected.encode("ascii"),
        signature_header.encode("utf-8", errors="surrogatepass"),
    )


def verify_webhook(
    provider: Provider,
    body: bytes,
    headers: Mapping[str, str],
    settings: WebhookSettings,
) -> bool:
    """Verify webhook signature for a given provider.

    Args:
        provider: Provider that sent the request
        body: Raw request body
        headers: Request headers (lowercase keys)
        settings: Loaded webhook settings holding the provider secrets

    Returns:
        True if signature is valid (or verification is skipped)
    """
    header_name = settings.signature_header_for(provider)
    return verify(body, headers.get(header_name), settings.secret_for(provider))
