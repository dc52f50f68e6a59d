"""
Shared FastAPI dependencies.
"""

import logging
import secrets

from fastapi import Header, HTTPException, Request

from robobridge.config import settings
from robobridge.link.manager import LinkManager

logger = logging.getLogger(__name__)


def get_bridge(request: Request) -> LinkManager:
    """Return the link manager created by the application lifespan."""
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        raise HTTPException(
            status_code=503,
            detail={"status": "unavailable", "message": "Bridge is not initialised"},
        )
    return bridge


def require_token(
    x_api_token: str | None = Header(default=None, alias="x-api-token"),
) -> None:
    """
    FastAPI dependency that guards the mutating bridge routes.

    When ``API_TOKEN`` is empty every request passes.  Otherwise the
    ``x-api-token`` header must match it exactly; **401** if it is missing or
    wrong.
    """
    expected = settings.api_token
    if not expected:
        return

    if not x_api_token:
        logger.warning("Missing x-api-token header")
        raise HTTPException(
            status_code=401,
            detail={"status": "unauthorized", "message": "Invalid or missing token"},
        )

    if not secrets.compare_digest(x_api_token, expected):
        logger.warning("Invalid x-api-token")
        raise HTTPException(
            status_code=401,
            detail={"status": "unauthorized", "message": "Invalid or missing token"},
        )
