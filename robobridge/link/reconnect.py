"""
Auto-reconnect loop: background task that restarts the link whenever it
is down.

Design
------
- Ticks every ``interval`` seconds (5 s by default).
- A tick calls ``LinkManager.start()`` only when the link is STOPPED and no
  start is in flight, neither one of ours (``starting``) nor a manual one
  (``manager.is_starting``).
- The ``starting`` flag is set before every attempt and cleared after it,
  whatever the outcome.
- Failures are logged and retried on the next tick, forever; only
  ``stop()`` or process exit ends the loop.
"""

import asyncio
import logging

from robobridge.link.manager import LinkManager, LinkState

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL: float = 5.0


class AutoReconnect:
    def __init__(
        self, manager: LinkManager, interval: float = DEFAULT_RECONNECT_INTERVAL
    ) -> None:
        self._manager = manager
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.starting = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._run(), name="auto_reconnect")
        logger.info("Auto-reconnect armed (every %.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Auto-reconnect stopped")

    async def tick(self) -> bool:
        """Run one supervision check.  Returns True if a start was attempted."""
        manager = self._manager
        if manager.state is not LinkState.STOPPED:
            return False
        if self.starting or manager.is_starting:
            return False

        logger.info("Auto-reconnect: attempting to start bridge...")
        self.starting = True
        try:
            outcome = await manager.start()
            if not outcome.ok:
                logger.warning("Auto-reconnect failed: %s", outcome.error)
        except Exception as exc:
            logger.warning("Auto-reconnect failed: %s", exc)
        finally:
            self.starting = False
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Auto-reconnect tick error: %s", exc, exc_info=True)
