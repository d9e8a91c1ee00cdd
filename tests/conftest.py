"""Shared fixtures for the subsync test suite."""

from __future__ import annotations

import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from subsync.config import WebhookSettings, parse_plan_map
from subsync.events import EventBroadcaster, ReconcileSignal
from subsync.models import Provider
from subsync.serve import create_app
from subsync.store import InMemoryProfileStore
from subsync.webhooks.dedup import DeliveryDedup
from subsync.webhooks.verification import sign

LS_SECRET = "ls-test-secret"
RZP_SECRET = "rzp-test-secret"


class RecordingSink:
    """SignalSink that keeps every signal for assertions."""

    def __init__(self) -> None:
        self.signals: list[ReconcileSignal] = []

    def emit(self, signal: ReconcileSignal) -> None:
        self.signals.append(signal)

    @property
    def outcomes(self) -> list[str]:
        return [s.outcome for s in self.signals]


class SlowProfileStore(InMemoryProfileStore):
    """In-memory store whose first *slow_calls* writes stall for *delay* seconds."""

    def __init__(self, delay: float, slow_calls: int | None = None) -> None:
        super().__init__()
        self.delay = delay
        self.slow_calls = slow_calls
        self.calls = 0

    def upsert_subscription(self, user_id, fields, *, deadline=None) -> None:
        self.calls += 1
        if self.slow_calls is None or self.calls <= self.slow_calls:
            time.sleep(self.delay)
        super().upsert_subscription(user_id, fields, deadline=deadline)


def make_settings(
    *,
    ls_secret: str = LS_SECRET,
    rzp_secret: str = RZP_SECRET,
    **overrides: Any,
) -> WebhookSettings:
    params: dict[str, Any] = {
        "secrets": {Provider.LEMONSQUEEZY: ls_secret, Provider.RAZORPAY: rzp_secret},
        "plan_maps": {
            Provider.LEMONSQUEEZY: parse_plan_map("Maker=maker,Pro=pro,Agency=agency"),
            Provider.RAZORPAY: parse_plan_map("plan_PRO123=pro,plan_MAKER1=maker"),
        },
        "store_timeout_seconds": 5.0,
    }
    params.update(overrides)
    return WebhookSettings(**params)


@pytest.fixture()
def settings() -> WebhookSettings:
    return make_settings()


@pytest.fixture()
def store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture()
def client(settings, store, broadcaster):
    """TestClient over an app wired to the in-memory store, dedup disabled."""
    app = create_app(
        settings=settings,
        store=store,
        dedup=DeliveryDedup(None),
        broadcaster=broadcaster,
    )
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def ls_headers():
    """Factory: LemonSqueezy headers for a body."""

    def _make(body: bytes, secret: str = LS_SECRET) -> dict[str, str]:
        return {"X-Signature": sign(body, secret), "Content-Type": "application/json"}

    return _make


@pytest.fixture()
def rzp_headers():
    """Factory: Razorpay headers for a body."""

    def _make(body: bytes, secret: str = RZP_SECRET) -> dict[str, str]:
        return {"X-Razorpay-Signature": sign(body, secret), "Content-Type": "application/json"}

    return _make


@pytest.fixture()
def slow_store():
    """Factory for SlowProfileStore."""
    return SlowProfileStore


@pytest.fixture()
def settings_factory():
    """Factory for WebhookSettings with test secrets and plan tables."""
    return make_settings


@pytest.fixture()
def client_factory():
    """Factory for TestClients with custom collaborators."""
    clients: list[TestClient] = []

    def _make(settings=None, store=None, dedup=None, broadcaster=None) -> TestClient:
        app = create_app(
            settings=settings or make_settings(),
            store=store if store is not None else InMemoryProfileStore(),
            dedup=dedup or DeliveryDedup(None),
            broadcaster=broadcaster,
        )
        c = TestClient(app, raise_server_exceptions=False)
        c.__enter__()
        clients.append(c)
        return c

    yield _make
    for c in clients:
        c.__exit__(None, None, None)
