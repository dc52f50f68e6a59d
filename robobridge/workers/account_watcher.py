"""
Account watcher: background task that follows a Solana account over the
JSON-RPC websocket API and reports every change.

Design
------
- ``subscribe()`` hands back a local subscription id straight away and runs
  the websocket session in its own task, so a flaky RPC endpoint never makes
  the link manager's start fail.
- Each session sends ``accountSubscribe`` and waits for the confirmation
  before reading notifications; every ``accountNotification`` for that
  subscription calls ``on_change(value)`` once.
- When the connection drops the session reconnects with exponential back-off
  (2 s, 4 s ... 60 s), reset after a confirmed subscription.
- ``unsubscribe()`` cancels the session task; closing the socket drops the
  server-side subscription with it.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Callable

import websockets

logger = logging.getLogger(__name__)

_BACKOFF_BASE: float = 2.0
_BACKOFF_MAX: float = 60.0

# How long to wait for the accountSubscribe confirmation
_CONFIRM_TIMEOUT: float = 10.0


class SubscriptionRejected(Exception):
    """The RPC node answered accountSubscribe with an error."""


def build_subscribe_request(request_id: int, account: str, commitment: str) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "accountSubscribe",
            "params": [account, {"encoding": "base64", "commitment": commitment}],
        }
    )


class AccountWatcher:
    def __init__(
        self,
        ws_url: str,
        commitment: str = "processed",
        connect: Callable[..., Any] = websockets.connect,
        backoff_base: float = _BACKOFF_BASE,
        backoff_max: float = _BACKOFF_MAX,
    ) -> None:
        self._ws_url = ws_url
        self._commitment = commitment
        self._connect = connect
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._ids = itertools.count(1)
        self._tasks: dict[int, asyncio.Task] = {}

    @property
    def active_subscriptions(self) -> int:
        return len(self._tasks)

    async def subscribe(self, key: str, on_change: Callable[[Any], None]) -> int:
        subscription_id = next(self._ids)
        self._tasks[subscription_id] = asyncio.create_task(
            self._watch(subscription_id, key, on_change),
            name=f"account_watcher:{key}",
        )
        logger.info("Watching account %s (subscription %d)", key, subscription_id)
        return subscription_id

    async def unsubscribe(self, subscription_id: int) -> None:
        task = self._tasks.pop(subscription_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped watching (subscription %d)", subscription_id)

    async def close(self) -> None:
        for subscription_id in list(self._tasks):
            await self.unsubscribe(subscription_id)

    async def _session(
        self,
        subscription_id: int,
        key: str,
        on_change: Callable[[Any], None],
        confirmed: asyncio.Event,
    ) -> None:
        """One websocket connection: subscribe, then forward notifications."""
        async with self._connect(self._ws_url) as ws:
            await ws.send(build_subscribe_request(subscription_id, key, self._commitment))

            remote_id = None
            while remote_id is None:
                raw = await asyncio.wait_for(ws.recv(), timeout=_CONFIRM_TIMEOUT)
                message = json.loads(raw)
                if message.get("id") != subscription_id:
                    continue
                if "error" in message:
                    raise SubscriptionRejected(str(message["error"]))
                remote_id = message.get("result")

            logger.info("accountSubscribe confirmed for %s (remote id %s)", key, remote_id)
            confirmed.set()

            async for raw in ws:
                message = json.loads(raw)
                if message.get("method") != "accountNotification":
                    continue
                params = message.get("params") or {}
                if params.get("subscription") != remote_id:
                    continue
                try:
                    on_change(params.get("result"))
                except Exception as exc:
                    logger.error("Account change handler failed: %s", exc, exc_info=True)

    async def _watch(
        self, subscription_id: int, key: str, on_change: Callable[[Any], None]
    ) -> None:
        backoff = self._backoff_base
        while True:
            confirmed = asyncio.Event()
            try:
                await self._session(subscription_id, key, on_change, confirmed)
                reason = "closed by server"
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                reason = f"failed: {exc}"
            if confirmed.is_set():
                backoff = self._backoff_base
            logger.warning(
                "Account watch for %s %s, retrying in %.0fs", key, reason, backoff
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._backoff_max)
