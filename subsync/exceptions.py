"""Webhook ingestion error taxonomy.

Each class maps to exactly one HTTP acknowledgement at the ingestion
boundary:

- MalformedPayloadError -> 500, provider redelivers
- StoreError            -> 500, provider redelivers
- StoreTimeoutError     -> 500, provider redelivers (nothing was written)

Signature failures are not exceptions: the verifier answers a boolean
and the service acknowledges with 401.  Unresolved references (missing
user, missing plan, unknown event) are not errors either; they are
observed and acknowledged with 200.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for webhook ingestion failures."""

    pass


class MalformedPayloadError(WebhookError):
    """Request body is not a JSON object."""

    pass


class StoreError(WebhookError):
    """Profile store write failed (connectivity, constraint, timeout)."""

    def __init__(self, message: str, *, user_id: str | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id


class StoreTimeoutError(StoreError):
    """The request deadline passed before the write could commit."""

    pass
