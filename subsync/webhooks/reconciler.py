"""State reconciler: apply a routed action to the profile store.

Each action is one complete, self-contained upsert (never a
read-modify-write), so re-applying an identical Activate leaves the
record unchanged apart from ``plan_updated_at``, and racing writes for
the same user are serialized by the store: last commit wins.

There is no ordering guard.  An older event delivered after a newer one
overwrites it; providers do not give a consistent event timestamp to
compare against.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from subsync.exceptions import StoreError
from subsync.models import utcnow
from subsync.store import ProfileStore
from subsync.webhooks.router import Action, Activate, Downgrade, Observe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    """What apply() did: ``activated``, ``downgraded`` or ``observed``."""
    outcome: str
    user_id: str | None = None
    plan: str | None = None
    reason: str = ""

    @property
    def mutated(self) -> bool:
        return self.outcome != "observed"


class StateReconciler:
    """Applies Activate / Downgrade / Observe to a ProfileStore."""

    def __init__(
        self,
        store: ProfileStore,
        *,
        free_plan: str = "free",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._free_plan = free_plan
        self._clock = clock

    def apply(self, action: Action, *, deadline: float | None = None) -> ReconcileOutcome:
        """Apply *action*, committing before *deadline* (``time.monotonic()``) or not at all.

        Raises:
            StoreError: the store write failed; the caller must answer with
                a retryable status so the provider redelivers
            StoreTimeoutError: *deadline* passed; nothing was written
        """
        if isinstance(action, Activate):
            self._upsert(action.user_id, {
                "plan": action.plan_id,
                "plan_updated_at": self._clock(),
                "provider": action.provider.value,
                "provider_customer_ref": action.customer_ref,
                "provider_subscription_ref": action.subscription_ref,
            }, deadline)
            logger.info("User %s upgraded to %s", action.user_id, action.plan_id)
            return ReconcileOutcome("activated", user_id=action.user_id, plan=action.plan_id)

        if isinstance(action, Downgrade):
            self._upsert(action.user_id, {
                "plan": self._free_plan,
                "plan_updated_at": self._clock(),
            }, deadline)
            logger.info("User %s downgraded to %s", action.user_id, self._free_plan)
            return ReconcileOutcome("downgraded", user_id=action.user_id, plan=self._free_plan)

        if isinstance(action, Observe):
            return ReconcileOutcome("observed", reason=action.reason)

        raise TypeError(f"Unknown reconciliation action: {action!r}")

    def _upsert(self, user_id: str, fields: dict, deadline: float | None) -> None:
        try:
            self._store.upsert_subscription(user_id, fields, deadline=deadline)
        except StoreError:
            raise
        except Exception as e:
            logger.exception("Unexpected profile store failure for user %s", user_id)
            raise StoreError(f"profile store failure: {e}", user_id=user_id) from e
