"""
Bridge control endpoints.

GET /bridge/status
------------------
``{"running": bool, "path": str | null}``; ``path`` is only set while the
link is running.

POST /bridge/start
------------------
Bring the serial link up (no-op when already running).  Returns
``{"ok": true}`` or ``{"ok": false, "error": "..."}``; a failed start is not
an HTTP error.

POST /bridge/stop
-----------------
Tear the link down.  Always ``{"ok": true}``.

POST /bridge/trigger
--------------------
Deliver one trigger to the robot.

``msg``       : command to write (default: the configured command, ``F``).
``source``    : origin tag reported in events (default ``api``).
``signature`` : optional correlation id, e.g. a transaction signature.

Returns ``{"written": bool, "queued": int}``.  ``written=false`` means the
link is down (or busy draining) and the trigger was queued.

GET /bridge/pending
-------------------
``{"count": int, "items": [...]}`` in delivery order.

GET /bridge/events
------------------
Server-Sent Events stream of ``status``, ``sent``, ``queued`` and
``serial-data`` events.

Authentication
--------------
``start``, ``stop`` and ``trigger`` require the ``x-api-token`` header when
``API_TOKEN`` is configured.
"""

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from robobridge.api.deps import get_bridge, require_token
from robobridge.link.manager import LinkManager
from robobridge.link.pending import Trigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bridge")

# Idle time before a keep-alive comment is sent on the event stream
_KEEPALIVE_SECONDS: float = 15.0


# ── Pydantic models ───────────────────────────────────────────────────────────


class LinkStatusResponse(BaseModel):
    running: bool
    path: str | None = None


class StartResponse(BaseModel):
    ok: bool
    error: str | None = None


class StopResponse(BaseModel):
    ok: bool


class TriggerRequest(BaseModel):
    msg: str | None = None
    source: str = "api"
    signature: str | None = None


class TriggerResponse(BaseModel):
    written: bool
    queued: int


class PendingItem(BaseModel):
    msg: str
    source: str
    signature: str | None
    created_at: str


class PendingResponse(BaseModel):
    count: int
    items: list[PendingItem]


# ── Routes ────────────────────────────────────────────────────────────────────


@router.get("/status", response_model=LinkStatusResponse)
def get_link_status(bridge: LinkManager = Depends(get_bridge)) -> LinkStatusResponse:
    return LinkStatusResponse(**bridge.status())


@router.post("/start", response_model=StartResponse, response_model_exclude_none=True)
async def start_bridge(
    bridge: LinkManager = Depends(get_bridge),
    _: None = Depends(require_token),
) -> StartResponse:
    outcome = await bridge.start()
    return StartResponse(**outcome.to_dict())


@router.post("/stop", response_model=StopResponse)
async def stop_bridge(
    bridge: LinkManager = Depends(get_bridge),
    _: None = Depends(require_token),
) -> StopResponse:
    outcome = await bridge.stop()
    return StopResponse(**outcome.to_dict())


@router.post("/trigger", response_model=TriggerResponse)
async def trigger_robot(
    body: TriggerRequest,
    bridge: LinkManager = Depends(get_bridge),
    _: None = Depends(require_token),
) -> TriggerResponse:
    if body.msg is not None:
        msg = body.msg.rstrip("\n")
        if not msg.strip():
            raise HTTPException(
                status_code=400,
                detail={"status": "error", "message": "msg must not be empty"},
            )
        if "\n" in msg:
            raise HTTPException(
                status_code=400,
                detail={"status": "error", "message": "msg must be a single line"},
            )
        trigger = Trigger(msg=msg, source=body.source, signature=body.signature)
    else:
        trigger = bridge.default_trigger(source=body.source, signature=body.signature)

    written = await bridge.deliver(trigger)
    return TriggerResponse(written=written, queued=bridge.pending_count())


@router.get("/pending", response_model=PendingResponse)
def get_pending(bridge: LinkManager = Depends(get_bridge)) -> PendingResponse:
    items = [PendingItem(**item.to_dict()) for item in bridge.pending_items()]
    return PendingResponse(count=len(items), items=items)


@router.get("/events")
async def stream_events(
    request: Request, bridge: LinkManager = Depends(get_bridge)
) -> StreamingResponse:
    """
    Forward every broadcast event to this client as SSE.

    The client gets its own bounded buffer; if it falls behind, events are
    dropped for it rather than slowing the bridge down.
    """
    client = request.client
    sub = bridge.sink.subscribe(name=f"{client.host}:{client.port}" if client else "")

    async def _stream() -> AsyncIterator[str]:
        try:
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(
                        sub.queue.get(), timeout=_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield event.to_sse()
        finally:
            bridge.sink.unsubscribe(sub)

    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
