"""FastAPI application factory for the webhook ingestion service.

Run with::

    uvicorn subsync.serve:create_app --factory

Wiring:
- Settings from the environment (``WebhookSettings.from_env``)
- Postgres profile store when DATABASE_URL is set, in-memory otherwise
- Redis delivery dedup when WEBHOOK_DEDUP_REDIS_URL is set
- One EventBroadcaster shared by the service, GET /webhooks/status and
  the /webhooks/stream websocket
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from subsync.config import WebhookSettings
from subsync.events import EventBroadcaster
from subsync.store import InMemoryProfileStore, PostgresProfileStore, ProfileStore
from subsync.webhooks.dedup import DeliveryDedup
from subsync.webhooks.handlers import register_webhook_routes
from subsync.webhooks.service import WebhookIngestService

logger = logging.getLogger(__name__)


def build_store(settings: WebhookSettings) -> ProfileStore:
    if settings.database_url:
        return PostgresProfileStore(
            settings.database_url,
            table=settings.profiles_table,
            timeout_seconds=settings.store_timeout_seconds,
        )
    logger.warning("DATABASE_URL not set; using in-memory profile store")
    return InMemoryProfileStore(free_plan=settings.free_plan)


def create_app(
    settings: WebhookSettings | None = None,
    store: ProfileStore | None = None,
    dedup: DeliveryDedup | None = None,
    broadcaster: EventBroadcaster | None = None,
) -> FastAPI:
    """Build the app; every collaborator can be injected for tests."""
    settings = settings or WebhookSettings.from_env()
    store = store if store is not None else build_store(settings)
    if dedup is None:
        dedup = DeliveryDedup.from_url(
            settings.dedup_redis_url, ttl_seconds=settings.dedup_ttl_seconds
        )
    broadcaster = broadcaster or EventBroadcaster()

    service = WebhookIngestService(settings, store, sink=broadcaster, dedup=dedup)

    app = FastAPI(title="subsync", docs_url=None, redoc_url=None)
    app.state.service = service
    app.state.broadcaster = broadcaster

    @app.get("/health")
    async def health():
        return {"status": "ok", "dedup": dedup.enabled}

    register_webhook_routes(app, service, broadcaster)
    return app
