"""
GET /status: service health check.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from robobridge.api.deps import get_bridge
from robobridge.link.manager import LinkManager

router = APIRouter()
logger = logging.getLogger(__name__)


class StatusResponse(BaseModel):
    status: str
    link: dict
    pending: int
    subscribers: int


@router.get("/status", response_model=StatusResponse)
def get_status(bridge: LinkManager = Depends(get_bridge)) -> StatusResponse:
    """
    Returns the overall service status.

    - **status**: ``"ok"`` while the serial link is running, ``"degraded"``
      otherwise (triggers are being queued).
    - **link**: ``{"running": bool, "path": str | null}``.
    - **pending**: number of triggers waiting for the link.
    - **subscribers**: connected event-stream clients.
    """
    link = bridge.status()
    return StatusResponse(
        status="ok" if link["running"] else "degraded",
        link=link,
        pending=bridge.pending_count(),
        subscribers=bridge.sink.subscriber_count,
    )
