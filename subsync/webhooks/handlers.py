"""Webhook HTTP handlers: FastAPI routes for inbound provider webhooks.

Each handler:
1. Reads the complete raw body (needed for HMAC verification)
2. Runs WebhookIngestService.handle in a worker thread and waits for it;
   the deadline is enforced inside the store call, so the worker is
   never abandoned with a write still pending
3. Returns the service's acknowledgement verbatim

Security contract:
- Never return error details to the webhook caller
- Return 200 for ignored events (missing user, unknown event type)
- Return 401 only for signature failures
- Return 500 for malformed bodies, store failures and deadline overruns
  so the provider redelivers

``/webhooks/stream`` pushes one JSON message per handled delivery to
connected dashboards.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse

from subsync.events import EventBroadcaster
from subsync.models import Provider
from subsync.webhooks.service import WebhookIngestService

logger = logging.getLogger(__name__)


async def _handle_webhook(
    request: Request,
    provider: str,
    service: WebhookIngestService,
) -> JSONResponse:
    body = await request.body()
    headers = dict(request.headers.items())

    result = await asyncio.to_thread(service.handle, provider, body, headers)
    return JSONResponse(result.body, status_code=result.status_code)


async def _stream_signals(websocket: WebSocket, broadcaster: EventBroadcaster) -> None:
    """Forward broadcaster signals to one websocket until it disconnects."""
    sub_id, queue = broadcaster.subscribe()
    await websocket.accept()
    receiver = asyncio.ensure_future(websocket.receive())
    getter: asyncio.Future | None = None
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {getter, receiver}, return_when=asyncio.FIRST_COMPLETED,
            )
            if receiver in done:
                message = receiver.result()
                if message["type"] == "websocket.disconnect":
                    getter.cancel()
                    break
                # Client chatter is ignored
                receiver = asyncio.ensure_future(websocket.receive())
            if getter in done:
                await websocket.send_json(getter.result())
            else:
                getter.cancel()
    finally:
        receiver.cancel()
        if getter is not None:
            getter.cancel()
        broadcaster.unsubscribe(sub_id)


def register_webhook_routes(
    app: FastAPI,
    service: WebhookIngestService,
    broadcaster: EventBroadcaster | None = None,
) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.post("/webhooks/lemonsqueezy")
    async def lemonsqueezy_webhook(request: Request):
        """Receive LemonSqueezy webhooks (X-Signature verified)."""
        return await _handle_webhook(request, Provider.LEMONSQUEEZY.value, service)

    @app.post("/webhooks/razorpay")
    async def razorpay_webhook(request: Request):
        """Receive Razorpay webhooks (X-Razorpay-Signature verified)."""
        return await _handle_webhook(request, Provider.RAZORPAY.value, service)

    @app.get("/webhooks/status")
    async def webhook_status():
        """Per-provider outcome counts."""
        return {"counts": broadcaster.counts() if broadcaster else {}}

    if broadcaster is not None:

        @app.websocket("/webhooks/stream")
        async def webhook_stream(websocket: WebSocket):
            await _stream_signals(websocket, broadcaster)

    logger.info("Webhook routes registered: /webhooks/{lemonsqueezy,razorpay}")
