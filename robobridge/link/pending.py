"""
Triggers and the in-memory queue of triggers waiting for the link.

The queue lives for the lifetime of the process only; a restart loses
anything that was never delivered.

Ordering
--------
Strict FIFO.  An item leaves the queue only after its write *and* drain
succeeded; a failed write puts it back at the head so the next drain retries
it before anything queued later.
"""

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from robobridge.link.errors import LinkError
from robobridge.link.handle import LinkHandle

logger = logging.getLogger(__name__)

DEFAULT_COMMAND: str = "F"
DEFAULT_DRAIN_THROTTLE: float = 0.12


@dataclass(frozen=True)
class Trigger:
    """One request for a physical action."""

    msg: str = DEFAULT_COMMAND
    source: str = "api"
    signature: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def command(self) -> str:
        return self.msg.rstrip("\n") or DEFAULT_COMMAND

    def wire_message(self) -> bytes:
        """Encode as a single newline-terminated line."""
        return (self.command + "\n").encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        return {
            "msg": self.command,
            "source": self.source,
            "signature": self.signature,
            "created_at": self.created_at.isoformat(),
        }


class PendingQueue:
    """FIFO buffer of triggers that could not be written immediately."""

    def __init__(
        self,
        throttle: float = DEFAULT_DRAIN_THROTTLE,
        on_enqueue: Callable[[Trigger, int], None] | None = None,
        on_sent: Callable[[Trigger], None] | None = None,
    ) -> None:
        self._items: deque[Trigger] = deque()
        self._throttle = throttle
        self._on_enqueue = on_enqueue
        self._on_sent = on_sent
        self._draining = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._draining

    def items(self) -> list[Trigger]:
        """Snapshot of the queue, head first."""
        return list(self._items)

    def enqueue(self, trigger: Trigger) -> int:
        self._items.append(trigger)
        count = len(self._items)
        logger.info(
            "Queued trigger from %s (signature=%s); %d pending",
            trigger.source,
            trigger.signature,
            count,
        )
        if self._on_enqueue is not None:
            self._on_enqueue(trigger, count)
        return count

    def clear(self) -> None:
        self._items.clear()

    async def drain_if_live(
        self,
        handle: LinkHandle | None,
        *,
        lock: asyncio.Lock | None = None,
        is_live: Callable[[], bool] = lambda: True,
        on_write_error: Callable[[Exception], None] | None = None,
    ) -> int:
        """
        Write queued triggers to ``handle`` in order while the link is usable.

        ``lock`` is held around each single write and released during the
        throttle pause, so other link users can interleave between items.
        ``is_live`` is re-checked before every item.  Returns the number of
        triggers delivered.  Calling this while a drain is already running is
        a no-op.

        A failed write puts the trigger back at the head, reports the error to
        ``on_write_error`` (still under ``lock``) and ends the drain.
        """
        if self._draining:
            return 0

        self._draining = True
        sent = 0
        try:
            while True:
                async with lock if lock is not None else contextlib.nullcontext():
                    if not self._items or handle is None:
                        break
                    if not handle.is_open or not is_live():
                        break
                    item = self._items.popleft()
                    try:
                        await handle.write(item.wire_message())
                        await handle.drain()
                    except LinkError as exc:
                        logger.error(
                            "Failed to process pending trigger, re-queuing: %s", exc
                        )
                        self._items.appendleft(item)
                        if on_write_error is not None:
                            on_write_error(exc)
                        break
                    except asyncio.CancelledError:
                        self._items.appendleft(item)
                        raise

                sent += 1
                logger.info("Delivered queued trigger %r from %s", item.command, item.source)
                if self._on_sent is not None:
                    self._on_sent(item)
                await asyncio.sleep(self._throttle)
        finally:
            self._draining = False

        if sent:
            logger.info("Drained %d queued trigger(s); %d still pending", sent, len(self))
        return sent
