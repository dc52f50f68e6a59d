"""
Robot bridge: FastAPI application entry point.

Run with:
    uvicorn robobridge.main:app --host 0.0.0.0 --port 3000
or:
    robot-bridge
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from robobridge.api.routes import bridge as bridge_router
from robobridge.api.routes import status as status_router
from robobridge.config import Settings, settings
from robobridge.events import BroadcastSink
from robobridge.link.manager import LinkConfig, LinkManager
from robobridge.link.reconnect import AutoReconnect
from robobridge.workers.account_watcher import AccountWatcher

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


def link_config_from_settings(cfg: Settings) -> LinkConfig:
    return LinkConfig(
        path=cfg.serial_path,
        baudrate=cfg.serial_baudrate,
        open_attempts=cfg.open_attempts,
        open_retry_delay=cfg.open_retry_delay,
        settle_delay=cfg.settle_delay,
        drain_throttle=cfg.drain_throttle,
        read_timeout=cfg.serial_read_timeout,
        default_command=cfg.default_command,
        watch_key=cfg.watch_account,
    )


def warn_on_self_send(cfg: Settings) -> bool:
    """Transfers from the watched account to itself may never fire a change."""
    if cfg.payer_account and cfg.payer_account == cfg.watch_account:
        logger.warning(
            "Payer account equals the watched account %s; "
            "sending to self might not fire an account change",
            cfg.watch_account,
        )
        return True
    return False


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the bridge and arm auto-reconnect on startup; tear down on shutdown."""
    warn_on_self_send(settings)

    sink = BroadcastSink(buffer_size=settings.event_buffer_size)
    watcher = AccountWatcher(settings.solana_ws_url, commitment=settings.commitment)
    bridge = LinkManager(link_config_from_settings(settings), sink, source=watcher)
    reconnect = AutoReconnect(bridge, interval=settings.auto_reconnect_interval)

    app.state.bridge = bridge
    app.state.reconnect = reconnect

    if settings.auto_reconnect_enabled:
        reconnect.start()
    logger.info("Bridge service started (serial=%s)", settings.serial_path)
    try:
        yield
    finally:
        await reconnect.stop()
        await bridge.close()
        await watcher.close()
        sink.close()
        app.state.bridge = None
        logger.info("Bridge service stopped")


app = FastAPI(
    title="Robot Bridge API",
    description="Bridges Solana account changes to a serial-attached robot.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(status_router.router, tags=["health"])
app.include_router(bridge_router.router, tags=["bridge"])


def run() -> None:
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
