"""
Broadcast sink: fan-out of bridge events to any number of subscribers.

Every subscriber gets its own bounded ``asyncio.Queue``.  Publishing never
blocks: when a subscriber's queue is full the event is dropped for that
subscriber only, so a slow SSE client cannot stall the link manager.

Event kinds
-----------
``status``       link went up or down       ``{"running": bool, "path": ..., "error"?: str}``
``sent``         trigger written            ``{"msg", "trigger", "signature"}``
``queued``       trigger buffered           ``{"count", "trigger", "signature"}``
``serial-data``  bytes read from the device ``{"text"}``
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

_DEFAULT_BUFFER_SIZE: int = 100

EVENT_KINDS = frozenset({"status", "sent", "queued", "serial-data"})


@dataclass(frozen=True)
class BridgeEvent:
    kind: str
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        """Render in ``text/event-stream`` framing."""
        return f"event: {self.kind}\ndata: {json.dumps(self.payload)}\n\n"


@dataclass(eq=False)
class Subscription:
    """One observer of the sink; compares by identity."""

    queue: asyncio.Queue
    name: str = ""
    dropped: int = 0


class BroadcastSink:
    def __init__(self, buffer_size: int = _DEFAULT_BUFFER_SIZE) -> None:
        self._buffer_size = buffer_size
        self._subscriptions: set[Subscription] = set()
        self._listeners: list[Callable[[BridgeEvent], None]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, name: str = "") -> Subscription:
        sub = Subscription(queue=asyncio.Queue(maxsize=self._buffer_size), name=name)
        self._subscriptions.add(sub)
        logger.info(
            "Event subscriber connected: %s (total: %d)",
            name or "anonymous",
            len(self._subscriptions),
        )
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.discard(sub)
            logger.info(
                "Event subscriber disconnected: %s (remaining: %d, dropped: %d)",
                sub.name or "anonymous",
                len(self._subscriptions),
                sub.dropped,
            )

    def add_listener(self, callback: Callable[[BridgeEvent], None]) -> None:
        """Register a synchronous hook called for every event."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[BridgeEvent], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def publish(self, kind: str, payload: dict[str, Any]) -> BridgeEvent:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        event = BridgeEvent(kind=kind, payload=payload)

        for sub in list(self._subscriptions):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.debug("Subscriber %s is full, dropping %s event", sub.name, kind)

        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as exc:
                logger.warning("Event listener failed on %s: %s", kind, exc)

        return event

    def close(self) -> None:
        """Cleanup on shutdown."""
        self._subscriptions.clear()
        self._listeners.clear()
