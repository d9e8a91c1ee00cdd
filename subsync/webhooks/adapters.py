"""Provider adapters: raw webhook payload -> CanonicalEvent.

Each adapter knows where its provider puts the event tag, the
subscription/payment entity, and the checkout metadata carrying
``user_id``/``plan_id``:

- LemonSqueezy: metadata on the envelope (``meta.custom_data``),
  entity at ``data.attributes``
- Razorpay: free-form ``notes`` nested inside the entity at
  ``payload.subscription.entity`` (or ``payload.payment.entity``)

Extraction is total.  A missing or wrongly typed nested object means
"field not present" and yields None; only a body that is not a JSON
object raises MalformedPayloadError.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from subsync.config import WebhookSettings
from subsync.exceptions import MalformedPayloadError
from subsync.models import CanonicalEvent, Provider, utcnow
from subsync.webhooks.router import classify

logger = logging.getLogger(__name__)


# ── Payload helpers ───────────────────────────────────────────────────────


def parse_envelope(raw_body: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
    """Decode a webhook body into a JSON object.

    Raises:
        MalformedPayloadError: body is not valid JSON, or not a JSON object
    """
    if isinstance(raw_body, Mapping):
        return dict(raw_body)
    try:
        envelope = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(envelope, dict):
        raise MalformedPayloadError(
            f"Webhook body must be a JSON object, got {type(envelope).__name__}"
        )
    return envelope


def dig(obj: Any, *keys: str) -> Any:
    """Walk nested dicts; return None as soon as a level is missing or not a dict."""
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def as_ref(value: Any) -> str | None:
    """Normalize an identifier to a non-empty string (``42`` -> ``"42"``)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (str, int, float)):
        s = str(value).strip()
        return s or None
    return None


def resolve_plan(
    plan_names: str | Iterable[str | None] | None,
    metadata_plan: str | None,
    plan_map: Mapping[str, str],
    known_plans: Iterable[str],
) -> str | None:
    """Resolve a plan id from provider plan/variant names, then metadata.

    Every name found in *plan_map* is a candidate, in the order given,
    followed by *metadata_plan*.  The first candidate that is a known plan
    wins.  Nothing known -> None, so an activation can never assign a
    garbage plan.
    """
    if plan_names is None or isinstance(plan_names, str):
        plan_names = (plan_names,)
    known = set(known_plans)
    candidates = [plan_map[name] for name in plan_names if name and name in plan_map]
    if metadata_plan:
        candidates.append(metadata_plan)

    for candidate in candidates:
        if candidate in known:
            return candidate
    if candidates:
        logger.info("Ignoring unknown plan id(s): %s", ", ".join(candidates))
    return None


# ── Adapter protocol ──────────────────────────────────────────────────────


@runtime_checkable
class ProviderAdapter(Protocol):
    """Normalizes one provider's webhook payloads."""

    provider: Provider

    def normalize(
        self,
        raw_body: bytes | str | Mapping[str, Any],
        *,
        received_at: datetime | None = None,
    ) -> CanonicalEvent:
        """Parse a raw body into a CanonicalEvent.

        Raises:
            MalformedPayloadError: body is not a JSON object
        """
        ...


class _BaseAdapter:
    """Shared normalize() flow; subclasses implement the field paths."""

    provider: Provider

    def __init__(self, plan_map: Mapping[str, str], known_plans: Iterable[str]) -> None:
        self._plan_map = plan_map
        self._known_plans = frozenset(known_plans)

    def normalize(
        self,
        raw_body: bytes | str | Mapping[str, Any],
        *,
        received_at: datetime | None = None,
    ) -> CanonicalEvent:
        envelope = parse_envelope(raw_body)
        tag = as_ref(self._event_tag(envelope)) or ""
        entity = self._entity(envelope)
        metadata = self._metadata(envelope, entity)

        plan_id = resolve_plan(
            [as_ref(name) for name in self._plan_names(entity)],
            as_ref(metadata.get("plan_id")),
            self._plan_map,
            self._known_plans,
        )

        return CanonicalEvent(
            provider=self.provider,
            event_kind=classify(self.provider, tag),
            provider_event_tag=tag,
            user_id=as_ref(metadata.get("user_id")),
            plan_id=plan_id,
            status=as_ref(entity.get("status")),
            provider_customer_ref=as_ref(entity.get("customer_id")),
            provider_subscription_ref=self._subscription_ref(envelope, entity),
            occurred_at=received_at or utcnow(),
        )

    # Field paths, overridden per provider

    def _event_tag(self, envelope: dict[str, Any]) -> Any:
        raise NotImplementedError

    def _entity(self, envelope: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def _metadata(self, envelope: dict[str, Any], entity: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def _plan_names(self, entity: dict[str, Any]) -> tuple[Any, ...]:
        raise NotImplementedError

    def _subscription_ref(self, envelope: dict[str, Any], entity: dict[str, Any]) -> str | None:
        return as_ref(entity.get("id"))


class LemonSqueezyAdapter(_BaseAdapter):
    """LemonSqueezy: ``meta.event_name``, ``meta.custom_data``, ``data.attributes``."""

    provider = Provider.LEMONSQUEEZY

    def _event_tag(self, envelope):
        return dig(envelope, "meta", "event_name")

    def _entity(self, envelope):
        attributes = dig(envelope, "data", "attributes")
        return attributes if isinstance(attributes, dict) else {}

    def _metadata(self, envelope, entity):
        custom_data = dig(envelope, "meta", "custom_data")
        return custom_data if isinstance(custom_data, dict) else {}

    def _plan_names(self, entity):
        return entity.get("variant_name"), entity.get("product_name")

    def _subscription_ref(self, envelope, entity):
        # Subscription id lives on the resource, not inside attributes
        return as_ref(dig(envelope, "data", "id"))


class RazorpayAdapter(_BaseAdapter):
    """Razorpay: ``event``, ``payload.<subscription|payment>.entity.notes``."""

    provider = Provider.RAZORPAY

    def _event_tag(self, envelope):
        return envelope.get("event")

    def _entity(self, envelope):
        order = ("subscription", "payment")
        if str(envelope.get("event", "")).startswith("payment."):
            order = ("payment", "subscription")
        for kind in order:
            entity = dig(envelope, "payload", kind, "entity")
            if isinstance(entity, dict):
                return entity
        return {}

    def _metadata(self, envelope, entity):
        notes = entity.get("notes")
        # Razorpay serializes empty notes as [] rather than {}
        return notes if isinstance(notes, dict) else {}

    def _plan_names(self, entity):
        return (entity.get("plan_id"),)


_ADAPTER_CLASSES: dict[Provider, type[_BaseAdapter]] = {
    Provider.LEMONSQUEEZY: LemonSqueezyAdapter,
    Provider.RAZORPAY: RazorpayAdapter,
}


def build_adapters(settings: WebhookSettings) -> dict[Provider, ProviderAdapter]:
    """Instantiate one adapter per provider with its plan mapping table."""
    return {
        provider: cls(settings.plan_map_for(provider), settings.known_plans)
        for provider, cls in _ADAPTER_CLASSES.items()
    }
