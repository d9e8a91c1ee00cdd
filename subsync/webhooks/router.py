"""Event router: provider event tags -> EventKind -> reconciliation action.

This is the single place provider event strings are registered.  To
support a new provider event, add it to that provider's map below; no
other module special-cases provider tags.

The action table is identical across providers:

    ACTIVATED / UPDATED / RESUMED  -> Activate  (user, plan, status == "active")
    CANCELLED / EXPIRED            -> Downgrade (user)
    PAYMENT_SUCCEEDED / FAILED     -> Observe
    UNRECOGNIZED                   -> Observe
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Union

from subsync.models import CanonicalEvent, EventKind, Provider

logger = logging.getLogger(__name__)


# LemonSqueezy event_name -> EventKind
_LEMONSQUEEZY_EVENT_MAP: dict[str, EventKind] = {
    "subscription_created": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription_updated": EventKind.SUBSCRIPTION_UPDATED,
    "subscription_resumed": EventKind.SUBSCRIPTION_RESUMED,
    "subscription_cancelled": EventKind.SUBSCRIPTION_CANCELLED,
    "subscription_expired": EventKind.SUBSCRIPTION_EXPIRED,
    "subscription_payment_success": EventKind.PAYMENT_SUCCEEDED,
    "subscription_payment_failed": EventKind.PAYMENT_FAILED,
}

# Razorpay event -> EventKind
_RAZORPAY_EVENT_MAP: dict[str, EventKind] = {
    "subscription.activated": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.resumed": EventKind.SUBSCRIPTION_RESUMED,
    "subscription.cancelled": EventKind.SUBSCRIPTION_CANCELLED,
    "subscription.completed": EventKind.SUBSCRIPTION_EXPIRED,
    "subscription.charged": EventKind.PAYMENT_SUCCEEDED,
    "payment.captured": EventKind.PAYMENT_SUCCEEDED,
    "payment.failed": EventKind.PAYMENT_FAILED,
}

PROVIDER_EVENT_MAPS = MappingProxyType({
    Provider.LEMONSQUEEZY: MappingProxyType(_LEMONSQUEEZY_EVENT_MAP),
    Provider.RAZORPAY: MappingProxyType(_RAZORPAY_EVENT_MAP),
})

_ACTIVATION_KINDS = frozenset({
    EventKind.SUBSCRIPTION_ACTIVATED,
    EventKind.SUBSCRIPTION_UPDATED,
    EventKind.SUBSCRIPTION_RESUMED,
})

_DOWNGRADE_KINDS = frozenset({
    EventKind.SUBSCRIPTION_CANCELLED,
    EventKind.SUBSCRIPTION_EXPIRED,
})


# ── Actions ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Activate:
    """Set the user's plan and provider linkage."""
    user_id: str
    plan_id: str
    provider: Provider
    customer_ref: str | None = None
    subscription_ref: str | None = None


@dataclass(frozen=True)
class Downgrade:
    """Move the user to the free tier; linkage is left untouched."""
    user_id: str


@dataclass(frozen=True)
class Observe:
    """No mutation; the event is only logged and signalled."""
    reason: str


Action = Union[Activate, Downgrade, Observe]


# ── Classification ────────────────────────────────────────────────────────


def classify(provider: Provider, tag: str) -> EventKind:
    """Map a provider's raw event tag to an EventKind (UNRECOGNIZED if unmapped)."""
    kind = PROVIDER_EVENT_MAPS.get(provider, {}).get(tag)
    if kind is None:
        logger.info("Unrecognized webhook event: %s/%s", provider.value, tag or "<none>")
        return EventKind.UNRECOGNIZED
    return kind


def route(event: CanonicalEvent) -> Action:
    """Pick the reconciliation action for an event.  Total over EventKind."""
    kind = event.event_kind

    if kind in _ACTIVATION_KINDS:
        if not event.user_id:
            return Observe("missing user_id")
        if not event.plan_id:
            return Observe("unresolved plan")
        if not event.is_active:
            return Observe(f"status {event.status or '<none>'} is not active")
        return Activate(
            user_id=event.user_id,
            plan_id=event.plan_id,
            provider=event.provider,
            customer_ref=event.provider_customer_ref,
            subscription_ref=event.provider_subscription_ref,
        )

    if kind in _DOWNGRADE_KINDS:
        if not event.user_id:
            return Observe("missing user_id")
        return Downgrade(user_id=event.user_id)

    if kind is EventKind.PAYMENT_SUCCEEDED:
        return Observe("payment succeeded")
    if kind is EventKind.PAYMENT_FAILED:
        return Observe("payment failed")
    return Observe("unrecognized event")
