"""Webhook delivery dedup: Redis-backed replay short-circuit.

Contract:
- Key pattern: webhook:seen:{provider}:{sha256(body)} with a TTL (24h default)
- A delivery is marked seen only AFTER it was applied successfully, so a
  store failure never suppresses the provider's redelivery
- Replays of an already-applied body are acknowledged with 200 and not
  re-applied
- If Redis is down, fails open (the reconciliation is idempotent anyway)
- Disabled entirely when no Redis URL is configured
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

import redis as redis_lib

logger = logging.getLogger(__name__)

_KEY_PREFIX = "webhook:seen"


def delivery_key(provider: str, body: bytes) -> str:
    """Dedup key for a raw delivery body."""
    digest = hashlib.sha256(body).hexdigest()
    return f"{_KEY_PREFIX}:{provider}:{digest}"


class DeliveryDedup:
    """Tracks applied webhook bodies in Redis."""

    def __init__(self, client: Any | None = None, *, ttl_seconds: int = 86400) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, *, ttl_seconds: int = 86400) -> DeliveryDedup:
        """Build from a Redis URL; an empty URL yields a disabled instance."""
        if not redis_url:
            return cls(None, ttl_seconds=ttl_seconds)
        client = redis_lib.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        return cls(client, ttl_seconds=ttl_seconds)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def is_duplicate(self, provider: str, body: bytes) -> bool:
        """True if this exact body was already applied for *provider*."""
        if self._client is None or not body:
            return False
        key = delivery_key(provider, body)
        try:
            return bool(self._client.exists(key))
        except redis_lib.RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup; allowing %s delivery", provider,
                exc_info=True,
            )
            return False

    def mark_seen(self, provider: str, body: bytes) -> None:
        """Record a successfully applied delivery."""
        if self._client is None or not body:
            return
        key = delivery_key(provider, body)
        try:
            self._client.set(key, "1", ex=self._ttl_seconds)
        except redis_lib.RedisError:
            logger.warning("Failed to mark webhook delivery as seen: %s", key)
