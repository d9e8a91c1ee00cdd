"""Webhook ingest service: verify -> parse -> normalize -> route -> reconcile.

Every call to handle() returns exactly one IngestResult; no branch
leaves the delivery unacknowledged:

    unknown provider        -> 404
    bad/missing signature   -> 401  (body is never parsed)
    already-applied replay  -> 200
    body not a JSON object  -> 500  (provider redelivers; logged)
    store failure           -> 500  (provider redelivers)
    deadline passed         -> 500  (provider redelivers; nothing written)
    applied or observed     -> 200

There is no internal retry queue; redelivery is the provider's job.
handle() does all of its work before returning: a write either commits
before the deadline or never happens, so nothing is left running once
the acknowledgement has been sent.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from subsync.config import WebhookSettings
from subsync.events import ReconcileSignal, SignalSink
from subsync.exceptions import MalformedPayloadError, StoreError, StoreTimeoutError
from subsync.models import CanonicalEvent, Provider
from subsync.store import ProfileStore
from subsync.webhooks.adapters import ProviderAdapter, build_adapters
from subsync.webhooks.dedup import DeliveryDedup
from subsync.webhooks.reconciler import StateReconciler
from subsync.webhooks.router import route
from subsync.webhooks.verification import verify_webhook

logger = logging.getLogger(__name__)

OK_BODY = MappingProxyType({"status": "ok"})
UNAUTHORIZED_BODY = MappingProxyType({"error": "Invalid signature"})
FAILED_BODY = MappingProxyType({"error": "Webhook processing failed"})
UNKNOWN_PROVIDER_BODY = MappingProxyType({"error": "Unknown provider"})


@dataclass(frozen=True)
class IngestResult:
    """HTTP acknowledgement for one delivery."""
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    outcome: str = ""


def _result(status_code: int, body: Mapping[str, Any], outcome: str) -> IngestResult:
    # Fresh dict per response; the templates above are shared
    return IngestResult(status_code, dict(body), outcome)


class WebhookIngestService:
    """Composes verifier, adapters, router and reconciler for each delivery."""

    def __init__(
        self,
        settings: WebhookSettings,
        store: ProfileStore,
        *,
        sink: SignalSink | None = None,
        dedup: DeliveryDedup | None = None,
        adapters: Mapping[Provider, ProviderAdapter] | None = None,
        reconciler: StateReconciler | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._sink = sink
        self._dedup = dedup or DeliveryDedup(None)
        self._adapters = dict(adapters) if adapters is not None else build_adapters(settings)
        self._reconciler = reconciler or StateReconciler(store, free_plan=settings.free_plan)

    def handle(
        self,
        provider_name: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        deadline: float | None = None,
    ) -> IngestResult:
        """Process one webhook delivery and return its acknowledgement.

        *deadline* is a ``time.monotonic()`` value; it defaults to now plus
        ``settings.store_timeout_seconds``.
        """
        if deadline is None:
            deadline = time.monotonic() + self.settings.store_timeout_seconds

        try:
            provider = Provider(provider_name)
        except ValueError:
            self._record(ReconcileSignal(provider=provider_name, outcome="unknown_provider"))
            return _result(404, UNKNOWN_PROVIDER_BODY, "unknown_provider")

        lowered = {k.lower(): v for k, v in headers.items()}

        # 1. Verify signature over the raw bytes; fail closed
        if not verify_webhook(provider, raw_body, lowered, self.settings):
            self._record(ReconcileSignal(provider=provider.value, outcome="unauthorized"))
            return _result(401, UNAUTHORIZED_BODY, "unauthorized")

        # 2. Replay of a body we already applied
        if self._dedup.is_duplicate(provider.value, raw_body):
            self._record(ReconcileSignal(provider=provider.value, outcome="duplicate"))
            return _result(200, OK_BODY, "duplicate")

        # 3. Parse + normalize
        adapter = self._adapters[provider]
        try:
            event = adapter.normalize(raw_body)
        except MalformedPayloadError as e:
            logger.error("Malformed %s webhook payload: %s", provider.value, e)
            self._record(ReconcileSignal(provider=provider.value, outcome="malformed", reason=str(e)))
            return _result(500, FAILED_BODY, "malformed")

        # 4. Route + reconcile
        action = route(event)
        try:
            result = self._reconciler.apply(action, deadline=deadline)
        except StoreTimeoutError as e:
            logger.error(
                "Deadline of %.1fs passed before applying %s/%s for user %s: %s",
                self.settings.store_timeout_seconds,
                provider.value, event.provider_event_tag, event.user_id, e,
            )
            self._record(self._signal(event, "timeout", reason=str(e)))
            return _result(500, FAILED_BODY, "timeout")
        except StoreError as e:
            logger.error(
                "Store failure applying %s/%s for user %s: %s",
                provider.value, event.provider_event_tag, event.user_id, e,
            )
            self._record(self._signal(event, "store_failed", reason=str(e)))
            return _result(500, FAILED_BODY, "store_failed")

        if result.mutated:
            self._dedup.mark_seen(provider.value, raw_body)

        self._record(self._signal(event, result.outcome, reason=result.reason))
        return _result(200, OK_BODY, result.outcome)

    @staticmethod
    def _signal(event: CanonicalEvent, outcome: str, reason: str = "") -> ReconcileSignal:
        return ReconcileSignal(
            provider=event.provider.value,
            outcome=outcome,
            event_tag=event.provider_event_tag,
            event_kind=event.event_kind.value,
            user_id=event.user_id,
            plan_id=event.plan_id,
            reason=reason,
        )

    def _record(self, signal: ReconcileSignal) -> None:
        """Audit log + observability signal for every outcome."""
        logger.info(
            "WEBHOOK_AUDIT provider=%s event=%s kind=%s user=%s outcome=%s reason=%s",
            signal.provider,
            signal.event_tag or "unknown",
            signal.event_kind or "unknown",
            signal.user_id or "-",
            signal.outcome,
            signal.reason or "-",
        )
        if self._sink is not None:
            self._sink.emit(signal)
