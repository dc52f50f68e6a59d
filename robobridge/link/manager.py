"""
Link lifecycle manager: the single owner of the serial link.

Everything that touches the link handle, the pending queue or the lifecycle
state goes through one ``LinkManager`` instance, and every mutation happens
under its ``asyncio.Lock``.  Callers (HTTP routes, the auto-reconnect loop,
the account watcher) only see typed results and broadcast events; nothing
raises past this class.

Lifecycle
---------
    STOPPED ──start()──▶ STARTING ──open/configure/settle ok──▶ RUNNING
       ▲                    │                                     │
       └──── failure ───────┘                                     │
       ▲                                                          │
       └──────── stop() (via STOPPING) / link error or close ◀────┘

A start that is already in flight is shared: concurrent ``start()`` calls
await the same outcome instead of opening a second handle.
"""

import asyncio
import codecs
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

from robobridge.events import BroadcastSink
from robobridge.link.errors import LinkError, OpenError
from robobridge.link.handle import LinkHandle, SerialLink
from robobridge.link.pending import (
    DEFAULT_COMMAND,
    DEFAULT_DRAIN_THROTTLE,
    PendingQueue,
    Trigger,
)
from robobridge.link.retry import (
    DEFAULT_OPEN_ATTEMPTS,
    DEFAULT_OPEN_RETRY_DELAY,
    open_with_retries,
)
from robobridge.link.shutdown import close_gracefully

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY: float = 2.0


class LinkState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class StartOutcome:
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.error is None:
            return {"ok": self.ok}
        return {"ok": self.ok, "error": self.error}


@dataclass(frozen=True)
class StopOutcome:
    ok: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok}


class EventSource(Protocol):
    """Whatever produces triggers; ``AccountWatcher`` is the real one."""

    async def subscribe(self, key: str, on_change: Callable[[Any], None]) -> Any: ...

    async def unsubscribe(self, subscription_id: Any) -> None: ...


@dataclass(frozen=True)
class LinkConfig:
    path: str
    baudrate: int = 9600
    open_attempts: int = DEFAULT_OPEN_ATTEMPTS
    open_retry_delay: float = DEFAULT_OPEN_RETRY_DELAY
    settle_delay: float = DEFAULT_SETTLE_DELAY
    drain_throttle: float = DEFAULT_DRAIN_THROTTLE
    read_timeout: float = 0.1
    default_command: str = DEFAULT_COMMAND
    watch_key: str = ""


def _new_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


def _serial_link_factory(config: LinkConfig) -> LinkHandle:
    return SerialLink(config.path, config.baudrate, read_timeout=config.read_timeout)


class LinkManager:
    def __init__(
        self,
        config: LinkConfig,
        sink: BroadcastSink,
        source: EventSource | None = None,
        link_factory: Callable[[LinkConfig], LinkHandle] = _serial_link_factory,
    ) -> None:
        self.config = config
        self.sink = sink
        self._source = source
        self._link_factory = link_factory

        self._lock = asyncio.Lock()
        self._state = LinkState.STOPPED
        self._handle: LinkHandle | None = None
        self._subscription_id: Any = None
        self._start_future: asyncio.Future | None = None
        self._background: set[asyncio.Task] = set()
        self._decoder = _new_decoder()
        self._queue = PendingQueue(
            throttle=config.drain_throttle,
            on_enqueue=self._on_enqueued,
            on_sent=lambda trigger: self._publish_sent(trigger, queued=True),
        )

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_starting(self) -> bool:
        return self._start_future is not None

    @property
    def running(self) -> bool:
        return self._state is LinkState.RUNNING

    def _is_live(self) -> bool:
        return (
            self._state is LinkState.RUNNING
            and self._handle is not None
            and self._handle.is_open
        )

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "path": self.config.path if self.running else None,
        }

    def pending_count(self) -> int:
        return len(self._queue)

    def pending_items(self) -> list[Trigger]:
        return self._queue.items()

    def default_trigger(self, source: str = "api", signature: str | None = None) -> Trigger:
        return Trigger(msg=self.config.default_command, source=source, signature=signature)

    # ── start ─────────────────────────────────────────────────────────────────

    async def start(self) -> StartOutcome:
        """
        Bring the link up.  Never raises.

        Returns immediately with ``ok=True`` when already running, and shares
        the outcome of a start that is already in flight.
        """
        if self._state is LinkState.RUNNING:
            return StartOutcome(ok=True)
        if self._start_future is not None:
            return await asyncio.shield(self._start_future)

        future = asyncio.get_running_loop().create_future()
        self._start_future = future
        outcome = StartOutcome(ok=False, error="Start was cancelled")
        try:
            outcome = await self._start()
        except asyncio.CancelledError:
            if self._state is LinkState.STARTING:
                handle, self._handle = self._handle, None
                if handle is not None:
                    handle.destroy()
                self._state = LinkState.STOPPED
            raise
        except Exception as exc:
            logger.error("Unexpected error while starting link: %s", exc, exc_info=True)
            async with self._lock:
                await self._release_resources()
                self._state = LinkState.STOPPED
            outcome = StartOutcome(ok=False, error=str(exc))
        finally:
            self._start_future = None
            if not future.done():
                future.set_result(outcome)

        if outcome.ok:
            await self.drain_pending()
        return outcome

    async def _start(self) -> StartOutcome:
        config = self.config
        async with self._lock:
            if self._handle is not None:
                logger.info("Closing stale handle for %s before start", config.path)
                await self._release_handle()

            handle = self._link_factory(config)
            self._handle = handle
            self._state = LinkState.STARTING

            try:
                await open_with_retries(handle, config.open_attempts, config.open_retry_delay)
            except OpenError as exc:
                await self._release_handle()
                self._state = LinkState.STOPPED
                logger.error("Failed to open serial port %s: %s", config.path, exc)
                return StartOutcome(ok=False, error=f"Failed to open serial port: {exc}")

            handle.on_error(lambda exc: self._on_link_error(handle, exc))
            handle.on_close(lambda: self._on_link_close(handle))

            try:
                await handle.configure(dtr=True, rts=True)
            except LinkError as exc:
                await self._release_handle()
                self._state = LinkState.STOPPED
                logger.error("Failed to configure %s: %s", config.path, exc)
                return StartOutcome(ok=False, error=str(exc))

        # Give the device time to finish the reset triggered by DTR.
        await asyncio.sleep(config.settle_delay)

        async with self._lock:
            if self._handle is not handle or self._state is not LinkState.STARTING:
                logger.warning("Link %s went away during start-up", config.path)
                return StartOutcome(ok=False, error="Link was stopped during start-up")
            if not handle.is_open:
                await self._release_handle()
                self._state = LinkState.STOPPED
                return StartOutcome(ok=False, error="Serial port closed during start-up")

            # Fresh decoder per handle; a multi-byte character may span two reads.
            self._decoder = _new_decoder()
            handle.on_data(self._on_link_data)

            if self._source is not None:
                try:
                    self._subscription_id = await self._source.subscribe(
                        config.watch_key, self._on_source_change
                    )
                except Exception as exc:
                    logger.error("Event source subscription failed: %s", exc)
                    await self._release_handle()
                    self._state = LinkState.STOPPED
                    return StartOutcome(ok=False, error=f"Subscription failed: {exc}")

            self._state = LinkState.RUNNING

        logger.info("Bridge running on %s @ %d baud", config.path, config.baudrate)
        self.sink.publish("status", {"running": True, "path": config.path})
        return StartOutcome(ok=True)

    # ── stop ──────────────────────────────────────────────────────────────────

    async def stop(self) -> StopOutcome:
        """Tear everything down.  Always succeeds from the caller's view."""
        async with self._lock:
            if self._handle is not None:
                self._state = LinkState.STOPPING
            try:
                await self._release_resources()
            except Exception as exc:
                logger.warning("Error while stopping link: %s", exc)
                self._handle = None
            self._state = LinkState.STOPPED

        logger.info("Bridge stopped")
        self.sink.publish("status", {"running": False})
        return StopOutcome(ok=True)

    async def _release_resources(self) -> None:
        """Unsubscribe and close the handle.  Caller holds the lock."""
        subscription_id, self._subscription_id = self._subscription_id, None
        if subscription_id is not None and self._source is not None:
            try:
                await self._source.unsubscribe(subscription_id)
            except Exception as exc:
                logger.warning("Ignoring unsubscribe error: %s", exc)
        await self._release_handle()

    async def _release_handle(self) -> None:
        # Drop the reference first so nothing can pick up a half-closed handle.
        handle, self._handle = self._handle, None
        await close_gracefully(handle)

    # ── deliver ───────────────────────────────────────────────────────────────

    async def deliver(self, trigger: Trigger) -> bool:
        """
        Write ``trigger`` now if the link is live and nothing is queued ahead
        of it; otherwise queue it.  Returns ``True`` only when written.
        """
        async with self._lock:
            handle = self._handle
            if (
                self._is_live()
                and handle is not None
                and not len(self._queue)
                and not self._queue.draining
            ):
                try:
                    await handle.write(trigger.wire_message())
                    await handle.drain()
                except LinkError as exc:
                    logger.warning("Failed to write to robot: %s", exc)
                    # Stays at the head of the queue for the next start.
                    self._queue.enqueue(trigger)
                    self._mark_lost(handle, f"Write failed: {exc}")
                    return False
                else:
                    logger.info("Wrote %r to robot (%s)", trigger.command, trigger.source)
                    self._publish_sent(trigger)
                    return True

            self._queue.enqueue(trigger)
        return False

    async def drain_pending(self) -> int:
        """
        Flush queued triggers if the link is live.  Safe to call any time.

        A write failure during the drain takes the link down, so the next
        start (manual or auto-reconnect) resumes from the failed trigger.
        """
        handle = self._handle
        return await self._queue.drain_if_live(
            handle,
            lock=self._lock,
            is_live=self._is_live,
            on_write_error=lambda exc: self._mark_lost(handle, f"Write failed: {exc}"),
        )

    # ── Callbacks ─────────────────────────────────────────────────────────────

    def _publish_sent(self, trigger: Trigger, queued: bool = False) -> None:
        self.sink.publish(
            "sent",
            {
                "msg": trigger.command,
                "trigger": trigger.source or ("queued" if queued else "api"),
                "signature": trigger.signature,
            },
        )

    def _on_enqueued(self, trigger: Trigger, count: int) -> None:
        self.sink.publish(
            "queued",
            {"count": count, "trigger": trigger.source, "signature": trigger.signature},
        )

    def _on_link_data(self, chunk: bytes) -> None:
        text = self._decoder.decode(chunk)
        if text:
            self.sink.publish("serial-data", {"text": text})

    def _on_link_error(self, handle: LinkHandle, exc: Exception) -> None:
        logger.error("Serial port error on %s: %s", handle.path, exc)
        self._mark_lost(handle, str(exc))

    def _on_link_close(self, handle: LinkHandle) -> None:
        logger.warning("Serial port %s closed unexpectedly", handle.path)
        self._mark_lost(handle, None)

    def _mark_lost(self, handle: LinkHandle, error: str | None) -> None:
        if self._handle is not handle or self._state is LinkState.STOPPED:
            return
        self._state = LinkState.STOPPED
        payload: dict[str, Any] = {"running": False}
        if error is not None:
            payload["error"] = error
        self.sink.publish("status", payload)
        self._spawn(self._cleanup_lost(handle), name="link_cleanup")

    async def _cleanup_lost(self, handle: LinkHandle) -> None:
        async with self._lock:
            if self._handle is not handle:
                return
            await self._release_resources()
            self._state = LinkState.STOPPED

    def _on_source_change(self, _info: Any = None) -> None:
        logger.info("Account change detected via blockchain")
        self._spawn(self.deliver(self.default_trigger(source="chain")), name="chain_trigger")

    def _spawn(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def close(self) -> None:
        """Stop the link and wait for any spawned callbacks to settle."""
        await self.stop()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
