"""Canonical event and subscription record types.

A CanonicalEvent is built per request and never persisted.  A
SubscriptionRecord mirrors the subscription columns of a user profile
row and is only ever written through the StateReconciler.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    """Payment providers that deliver webhooks."""
    LEMONSQUEEZY = "lemonsqueezy"
    RAZORPAY = "razorpay"


class EventKind(str, Enum):
    """Provider-independent event vocabulary."""
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    UNRECOGNIZED = "unrecognized"


# Only this provider-reported status may upgrade a plan
ACTIVE_STATUS = "active"


@dataclass(frozen=True)
class CanonicalEvent:
    """Normalized, provider-agnostic webhook notification."""

    provider: Provider
    event_kind: EventKind
    provider_event_tag: str
    user_id: str | None = None
    plan_id: str | None = None
    status: str | None = None
    provider_customer_ref: str | None = None
    provider_subscription_ref: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE_STATUS


@dataclass
class SubscriptionRecord:
    """Subscription fields of a user profile."""

    user_id: str
    plan: str = "free"
    plan_updated_at: datetime | None = None
    provider: str | None = None
    provider_customer_ref: str | None = None
    provider_subscription_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> SubscriptionRecord:
        return SubscriptionRecord(
            **{k: v for k, v in d.items() if k in SubscriptionRecord.__dataclass_fields__}
        )
