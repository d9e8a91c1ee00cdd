"""Structured observability signals for webhook outcomes.

Provides:
- ReconcileSignal: one record per handled webhook (provider, tag, kind, outcome)
- SignalSink: protocol for anything that consumes signals
- EventBroadcaster: fans signals out to subscriber queues and keeps
  per-provider outcome counters
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileSignal:
    """Outcome of one webhook delivery."""
    provider: str
    outcome: str  # unauthorized, malformed, activated, downgraded, observed, duplicate, store_failed, timeout
    event_tag: str = ""
    event_kind: str = ""
    user_id: str | None = None
    plan_id: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["type"] = "webhook_reconciled"
        return d


@runtime_checkable
class SignalSink(Protocol):
    """Consumer of ReconcileSignal records."""

    def emit(self, signal: ReconcileSignal) -> None:
        ...


class EventBroadcaster:
    """Fans out signals to all subscribers and counts outcomes."""

    def __init__(self, max_queue: int = 500) -> None:
        # sub_id -> (queue, loop that owns the queue or None); guarded by _lock
        self._subscribers: dict[str, tuple[asyncio.Queue, asyncio.AbstractEventLoop | None]] = {}
        self._max_queue = max_queue
        self._lock = threading.Lock()
        self._counts: dict[str, dict[str, int]] = {}

    def subscribe(self) -> tuple[str, asyncio.Queue]:
        """Register a new subscriber. Returns (subscriber_id, queue)."""
        sub_id = str(uuid.uuid4())[:8]
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        with self._lock:
            self._subscribers[sub_id] = (queue, loop)
            total = len(self._subscribers)
        logger.info("Signal subscriber connected: %s (total: %d)", sub_id, total)
        return sub_id, queue

    def unsubscribe(self, sub_id: str) -> None:
        """Remove a subscriber."""
        with self._lock:
            self._subscribers.pop(sub_id, None)
            total = len(self._subscribers)
        logger.info("Signal subscriber disconnected: %s (total: %d)", sub_id, total)

    def emit(self, signal: ReconcileSignal) -> None:
        with self._lock:
            by_outcome = self._counts.setdefault(signal.provider, {})
            by_outcome[signal.outcome] = by_outcome.get(signal.outcome, 0) + 1
        self.broadcast(signal.to_dict())

    def broadcast(self, event: dict[str, Any]) -> None:
        """Send an event to all subscribers (non-blocking, callable from any thread)."""
        event["timestamp"] = time.time()
        with self._lock:
            subscribers = list(self._subscribers.values())
        for queue, loop in subscribers:
            if loop is not None and not _on_loop(loop):
                try:
                    loop.call_soon_threadsafe(_put_latest, queue, event)
                except RuntimeError:
                    logger.debug("Subscriber loop closed; signal dropped")
            else:
                _put_latest(queue, event)

    def counts(self) -> dict[str, dict[str, int]]:
        """Per-provider outcome counters (copy)."""
        with self._lock:
            return {p: dict(c) for p, c in self._counts.items()}


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


def _put_latest(queue: asyncio.Queue, event: dict[str, Any]) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        # Drop oldest event to make room
        try:
            queue.get_nowait()
            queue.put_nowait(event)
        except (asyncio.QueueEmpty, asyncio.QueueFull):
            logger.debug("Dropped signal for a saturated subscriber")
